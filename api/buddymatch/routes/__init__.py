from fastapi import APIRouter, FastAPI

from .match import router as match_router, scaffold_router as match_scaffold_router


def include_modular_routers(app: FastAPI) -> None:
    app.include_router(match_router, tags=["match"])

    app.include_router(match_scaffold_router, prefix="/_scaffold/match", tags=["scaffold-match"])


__all__ = ["include_modular_routers", "APIRouter"]
