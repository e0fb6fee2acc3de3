from irgateway.web.routers.data import router as data_router

__all__ = [
    "data_router",
]
