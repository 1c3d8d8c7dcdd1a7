"""
Read-only accessors over the module catalog.
"""
from typing import List, Literal, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.features.modules.models import Module
from app.features.permissions.models import Permission


ModuleScope = Literal["all", "core", "paid"]


class ModuleCatalog:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_module(self, code: str) -> Optional[Module]:
        result = await self.db.execute(select(Module).where(Module.code == code))
        return result.scalar_one_or_none()

    async def list_modules(self, scope: ModuleScope = "all") -> List[Module]:
        """All catalog modules in display order; `scope` narrows to core or paid ones."""
        stmt = select(Module).order_by(Module.rank, Module.code)
        if scope == "core":
            stmt = stmt.where(Module.is_core.is_(True))
        elif scope == "paid":
            stmt = stmt.where(Module.is_core.is_(False))
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def core_module_codes(self) -> List[str]:
        return [module.code for module in await self.list_modules("core")]

    async def list_permissions_by_module(self, code: str) -> List[Permission]:
        stmt = select(Permission).where(Permission.module == code).order_by(Permission.code)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
