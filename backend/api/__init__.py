from .artifacts import router as artifacts_router
from .maintenance import router as maintenance_router
from .memory import router as memory_router

__all__ = ["memory_router", "artifacts_router", "maintenance_router"]
