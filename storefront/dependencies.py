"""
FastAPI dependencies: caller identity, role checks and the per-app
singletons (settings, cache, payment gateway, metrics) kept on app.state.

Identity arrives in the X-User-Id header, set by the upstream auth gateway.
"""

from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from storefront.cache import CacheClient
from storefront.config import Settings
from storefront.database import get_db
from storefront.errors import Forbidden, Unauthorized
from storefront.metrics import MetricsCollector, PerformanceBuffer
from storefront.models import User
from storefront.payments.gateway import StripeGateway


def get_current_user(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    db: Session = Depends(get_db),
) -> User:
    if not x_user_id:
        raise Unauthorized()
    user = db.get(User, x_user_id)
    if user is None:
        raise Unauthorized()
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise Forbidden()
    return user


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_cache(request: Request) -> CacheClient:
    return request.app.state.cache


def get_gateway(request: Request) -> StripeGateway:
    return request.app.state.gateway


def get_performance_buffer(request: Request) -> PerformanceBuffer:
    return request.app.state.performance_buffer


def get_metrics_collector(request: Request) -> MetricsCollector:
    return request.app.state.metrics
