"""
FastAPI dependencies resolving the services wired onto app.state by create_app.
"""

from fastapi import Request

from saferewriter.config import Settings
from saferewriter.services.cache_service import CacheStore
from saferewriter.services.rewrite_service import RewriteService


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_cache(request: Request) -> CacheStore:
    return request.app.state.cache


def get_rewrite_service(request: Request) -> RewriteService:
    return request.app.state.rewrite_service
