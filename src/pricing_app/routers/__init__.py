from pricing_app.routers.admin_api import router as admin_router
from pricing_app.routers.group_api import router as group_router
from pricing_app.routers.log_api import router as log_router

__all__ = ["admin_router", "group_router", "log_router"]
