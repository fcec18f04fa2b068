# API routes
from capacity_engine.api.routes import admin_capacity
from capacity_engine.api.routes import admin_plans
from capacity_engine.api.routes import entitlements

__all__ = ["admin_capacity", "admin_plans", "entitlements"]
