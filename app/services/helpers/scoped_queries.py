"""
Tenant-scoped lookups by primary key.

The engine never calls ``db.session.get(Model, pk)`` for a job, stage or
response: a bare ``.get()`` ignores the tenant, and a job id guessed from
another tenant would then be answered against this tenant's stage graph.

    job = get_scoped(Job, job_id, tenant_id=tenant_id)
    response = get_scoped(StageResponse, rid, job_id=job.id, stage_id=stage.id)

Each keyword names a column of ``model``. A keyword the model lacks is
logged and ignored; if none of them apply the call raises ValueError rather
than running unscoped.
"""

import logging

from sqlalchemy import select

from app.core.exceptions import NotFoundError
from app.models import db

logger = logging.getLogger(__name__)

SCOPE_FIELDS = ("tenant_id", "job_id", "stage_id")


def get_scoped(
    model,
    pk,
    *,
    tenant_id: int | None = None,
    job_id: int | None = None,
    stage_id: int | None = None,
):
    """Fetch one row by PK, filtered by every applicable scope column.

    A row of another tenant is reported exactly like a missing row.

    Raises:
        ValueError: no scope given, or no given scope is a column of ``model``.
        NotFoundError: no row with that PK inside the scope.
    """
    given = {"tenant_id": tenant_id, "job_id": job_id, "stage_id": stage_id}
    given = {name: value for name, value in given.items() if value is not None}
    if not given:
        raise ValueError(
            f"{model.__name__} id={pk} requires at least one scope filter "
            f"({', '.join(SCOPE_FIELDS)})."
        )

    filters = {name: value for name, value in given.items() if hasattr(model, name)}
    ignored = sorted(set(given) - set(filters))
    if ignored:
        logger.warning(
            "get_scoped(%s, %s): %s not columns of the model, filter skipped",
            model.__name__, pk, ignored,
        )
    if not filters:
        raise ValueError(
            f"{model.__name__} id={pk}: none of the scope fields "
            f"{sorted(given)} exist on {model.__name__}."
        )

    if pk is None:
        raise NotFoundError(resource=model.__name__, resource_id=pk)

    stmt = select(model).where(model.id == pk)
    for name, value in filters.items():
        stmt = stmt.where(getattr(model, name) == value)

    row = db.session.execute(stmt).scalar_one_or_none()
    if row is None:
        logger.debug("get_scoped: %s id=%s not in scope %s", model.__name__, pk, filters)
        raise NotFoundError(resource=model.__name__, resource_id=pk)
    return row


def get_scoped_or_none(model, pk, **scopes):
    """get_scoped, returning None for a row outside the scope.

    The scope requirement still raises ValueError.
    """
    try:
        return get_scoped(model, pk, **scopes)
    except NotFoundError:
        return None
