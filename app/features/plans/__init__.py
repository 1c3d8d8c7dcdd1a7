"""
Subscription plans and resolution of an organization's current plan.
"""
