"""
api/routes/v1/admin.py -- Operator endpoints. Every route requires Role.admin.

Routes:
  GET  /api/v1/admin/users                       -- paginated user list
  GET  /api/v1/admin/users/{user_id}/activities  -- one user's recent activity
  GET  /api/v1/admin/activities                  -- recent activity feed
  GET  /api/v1/admin/activities/stats            -- counts per action (cached 60s)
  GET  /api/v1/admin/system-health               -- database / cache / audit status
  GET  /api/v1/admin/cache-stats                 -- cache counters
  POST /api/v1/admin/cache/invalidate            -- delete cache keys by glob pattern

The admin gate is a router-level dependency, so it runs (and attaches the
principal) before any handler in this module.

Handlers are plain `def`: they call the synchronous stores and Redis client,
so FastAPI runs them in the threadpool and a slow backend never blocks the
event loop.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request

from api.models import ActivityOut, CacheInvalidateRequest, Envelope, Pagination, UserOut, success
from audit.hooks import ObservedRoute, audit_activity, observe
from audit.models import CACHE_INVALIDATE
from audit.recorder import AuditRecorder
from audit.store import ActivityLogStore
from auth.dependencies import require_admin
from auth.models import Role
from auth.store import UserStore
from cache.store import CacheStore

router = APIRouter(route_class=ObservedRoute, dependencies=[Depends(require_admin)])

_STATS_TTL = 60


@router.get("/admin/users", response_model=Envelope)
def list_users(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    role: Role | None = None,
) -> Envelope:
    user_store: UserStore = request.app.state.user_store
    users, total = user_store.list_users(role=role, limit=limit, skip=(page - 1) * limit)
    return success(
        {
            "users": [UserOut.from_user(u) for u in users],
            "pagination": Pagination(
                current_page=page,
                total_pages=math.ceil(total / limit) if total else 0,
                total_users=total,
                has_next=page * limit < total,
                has_prev=page > 1,
            ),
        }
    )


@router.get("/admin/users/{user_id}/activities", response_model=Envelope)
def user_activities(request: Request, user_id: str, limit: int = Query(20, ge=1, le=200)) -> Envelope:
    store: ActivityLogStore = request.app.state.activity_store
    return success([ActivityOut.from_entry(e) for e in store.list_for_user(user_id, limit)])


@router.get("/admin/activities", response_model=Envelope)
def recent_activities(
    request: Request,
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
) -> Envelope:
    store: ActivityLogStore = request.app.state.activity_store
    return success([ActivityOut.from_entry(e) for e in store.list_recent(limit, skip)])


@router.get("/admin/activities/stats", response_model=Envelope)
def activity_stats(request: Request, days: int = Query(30, ge=1, le=365)) -> Envelope:
    store: ActivityLogStore = request.app.state.activity_store
    cache: CacheStore = request.app.state.cache

    def _load() -> dict:
        stats = store.stats(days)
        return {
            "by_action": [{"action": action, "count": count} for action, count in stats.by_action],
            "today_total": stats.today_total,
            "period_days": stats.period_days,
        }

    return success(cache.get_or_load(f"activity_stats:{days}", _load, ttl_seconds=_STATS_TTL))


@router.get("/admin/system-health", response_model=Envelope)
def system_health(request: Request) -> Envelope:
    user_store: UserStore = request.app.state.user_store
    cache: CacheStore = request.app.state.cache
    recorder: AuditRecorder = request.app.state.audit
    if not cache.enabled:
        cache_status = "disabled"
    else:
        cache_status = "connected" if cache.ping() else "error"
    return success(
        {
            "database": "connected" if user_store.ping() else "error",
            "cache": cache_status,
            "pending_audit_writes": recorder.pending,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )


@router.get("/admin/cache-stats", response_model=Envelope)
def cache_stats(request: Request) -> Envelope:
    cache: CacheStore = request.app.state.cache
    return success(
        {
            "statistics": cache.stats(),
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }
    )


@router.post("/admin/cache/invalidate", response_model=Envelope)
@observe(audit_activity(CACHE_INVALIDATE, lambda request, envelope: dict(envelope.get("data") or {})))
def invalidate_cache(request: Request, body: CacheInvalidateRequest) -> Envelope:
    cache: CacheStore = request.app.state.cache
    removed = cache.delete_pattern(body.pattern)
    return success({"pattern": body.pattern, "removed": removed}, message=f"Removed {removed} cache key(s)")
