"""
Entitlement engine: which modules an organization may use.

- Core modules are active for every organization, with or without an
  OrganizationModule row, and never count against the plan quota.
- Paid modules are active when their OrganizationModule row is active; the
  number of active paid modules is bounded by the plan's max_modules.

activate() and deactivate() run inside locked_organization(), so the quota
check and the write happen as one serialized unit per organization. Both
return an OperationResult instead of raising; persistence errors are logged
and reported as INTERNAL_ERROR.
"""
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.locks import locked_organization
from app.core.results import OperationResult, ResultCode
from app.features.modules.catalog import ModuleCatalog
from app.features.modules.models import Module, OrganizationModule
from app.features.modules.schemas import ModuleResponse, ModuleStatus, PlanSummary
from app.features.organizations.models import Organization
from app.features.plans.service import PlanResolver
from app.utils import get_logger, utcnow


log = get_logger(__name__)


class EntitlementEngine:
    def __init__(
        self,
        db: AsyncSession,
        catalog: Optional[ModuleCatalog] = None,
        plans: Optional[PlanResolver] = None,
    ):
        self.db = db
        self.catalog = catalog or ModuleCatalog(db)
        self.plans = plans or PlanResolver(db)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _active_rows(self, organization_id: str) -> List[OrganizationModule]:
        stmt = select(OrganizationModule).where(
            OrganizationModule.organization_id == organization_id,
            OrganizationModule.is_active.is_(True),
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _get_row(self, organization_id: str, module_code: str) -> Optional[OrganizationModule]:
        return await self.db.get(OrganizationModule, (organization_id, module_code))

    async def get_status(self, organization_id: str) -> ModuleStatus:
        plan = await self.plans.get_current_plan(organization_id)
        modules = await self.catalog.list_modules()
        enabled = {row.module_code for row in await self._active_rows(organization_id)}

        active = [m for m in modules if m.is_core or m.code in enabled]
        active_codes = {m.code for m in active}
        paid_count = sum(1 for m in active if not m.is_core)
        max_allowed = plan.max_modules if plan else 0

        organization = await self.db.get(Organization, organization_id)

        return ModuleStatus(
            organization_id=organization_id,
            organization_name=organization.name if organization else "Unknown",
            plan=PlanSummary.model_validate(plan) if plan else None,
            active_modules=[m.code for m in active],
            active_modules_count=len(active),
            paid_modules_count=paid_count,
            max_modules_allowed=max_allowed,
            can_activate_more=paid_count < max_allowed,
            available_modules=[
                ModuleResponse.model_validate(m)
                for m in modules
                if m.code not in active_codes and m.is_active
            ],
        )

    async def is_module_active(self, organization_id: str, module_code: str) -> bool:
        module = await self.catalog.find_module(module_code)
        if module is None:
            return False
        if module.is_core:
            return True
        row = await self._get_row(organization_id, module_code)
        return row is not None and row.is_active

    async def list_active_modules(self, organization_id: str) -> List[Module]:
        enabled = {row.module_code for row in await self._active_rows(organization_id)}
        return [m for m in await self.catalog.list_modules() if m.is_core or m.code in enabled]

    async def list_active_paid_rows(self, organization_id: str) -> List[OrganizationModule]:
        """Active paid activation records, oldest activation first."""
        stmt = (
            select(OrganizationModule)
            .join(Module, Module.code == OrganizationModule.module_code)
            .where(
                OrganizationModule.organization_id == organization_id,
                OrganizationModule.is_active.is_(True),
                Module.is_core.is_(False),
            )
            .order_by(OrganizationModule.enabled_at.asc(), OrganizationModule.module_code.asc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _upsert_active(self, organization_id: str, module_code: str) -> OrganizationModule:
        row = await self._get_row(organization_id, module_code)
        now = utcnow()
        if row is None:
            row = OrganizationModule(
                organization_id=organization_id,
                module_code=module_code,
                is_active=True,
                enabled_at=now,
            )
            self.db.add(row)
        elif not row.is_active:
            row.is_active = True
            row.enabled_at = now
            row.disabled_at = None
        await self.db.flush()
        return row

    async def activate(self, organization_id: str, module_code: str) -> OperationResult:
        try:
            async with locked_organization(self.db, organization_id):
                return await self._activate(organization_id, module_code)
        except SQLAlchemyError:
            log.exception("Error activating module %s for organization %s", module_code, organization_id)
            return OperationResult.fail(ResultCode.INTERNAL_ERROR, "Internal error while activating the module")

    async def _activate(self, organization_id: str, module_code: str) -> OperationResult:
        module = await self.catalog.find_module(module_code)
        if module is None:
            return OperationResult.fail(ResultCode.MODULE_NOT_FOUND, f"Module '{module_code}' not found")

        status = await self.get_status(organization_id)
        if module_code in status.active_modules:
            return OperationResult.fail(ResultCode.ALREADY_ACTIVE, f"Module {module.name} is already active")

        # Core modules are always active, so only paid modules get this far
        if not module.is_active:
            return OperationResult.fail(
                ResultCode.MODULE_UNAVAILABLE, f"Module {module.name} is not available for activation"
            )
        if not status.can_activate_more:
            return OperationResult.fail(
                ResultCode.QUOTA_EXCEEDED,
                f"You have reached your plan's module limit ({status.max_modules_allowed}). "
                f"Upgrade your plan to activate more modules.",
                max_modules_allowed=status.max_modules_allowed,
                paid_modules_count=status.paid_modules_count,
            )

        await self._upsert_active(organization_id, module_code)

        log.info("Module %s activated for organization %s", module_code, organization_id)
        return OperationResult.ok(
            f"Module {module.name} activated",
            module=ModuleResponse.model_validate(module).model_dump(),
        )

    async def deactivate(self, organization_id: str, module_code: str) -> OperationResult:
        try:
            async with locked_organization(self.db, organization_id):
                return await self._deactivate(organization_id, module_code)
        except SQLAlchemyError:
            log.exception("Error deactivating module %s for organization %s", module_code, organization_id)
            return OperationResult.fail(ResultCode.INTERNAL_ERROR, "Internal error while deactivating the module")

    async def _deactivate(self, organization_id: str, module_code: str) -> OperationResult:
        module = await self.catalog.find_module(module_code)
        if module is None:
            return OperationResult.fail(ResultCode.MODULE_NOT_FOUND, f"Module '{module_code}' not found")

        if module.is_core:
            return OperationResult.fail(
                ResultCode.CORE_MODULE_PROTECTED, f"Core module {module.name} cannot be deactivated"
            )

        row = await self._get_row(organization_id, module_code)
        if row is None or not row.is_active:
            return OperationResult.fail(ResultCode.NOT_ACTIVE, f"Module {module.name} is not active")

        row.is_active = False
        row.disabled_at = utcnow()
        await self.db.flush()

        log.info("Module %s deactivated for organization %s", module_code, organization_id)
        return OperationResult.ok(
            f"Module {module.name} deactivated",
            module=ModuleResponse.model_validate(module).model_dump(),
        )

    async def ensure_core_modules_activated(self, organization_id: str) -> List[str]:
        """
        Make sure every core module has an active row. Flushes, does not commit.

        Returns the codes whose row was created or reactivated.
        """
        repaired = []
        for module in await self.catalog.list_modules("core"):
            row = await self._get_row(organization_id, module.code)
            if row is not None and row.is_active:
                continue
            await self._upsert_active(organization_id, module.code)
            await self.ensure_core_module_permissions(organization_id, module.code)
            repaired.append(module.code)
        if repaired:
            log.info("Core modules %s materialized for organization %s", repaired, organization_id)
        return repaired

    async def ensure_core_module_permissions(self, organization_id: str, module_code: str) -> None:
        """
        Extension point run whenever a core module row is activated.

        Baseline grants for core modules are provisioned by the catalog seed,
        so there is nothing to do per organization yet.
        """
        log.debug("Core permissions checked for module %s in organization %s", module_code, organization_id)
