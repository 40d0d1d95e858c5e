"""Admin management of resource tags."""

from __future__ import annotations

import math
import re
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rxportal.db.models import Resource, Tag
from rxportal.metrics import tag_mutations_total
from rxportal.sanitizer import sanitize_text
from rxportal.time_utils import isoformat_utc, utc_now

logger = structlog.get_logger(__name__)

MAX_TAG_NAME_LENGTH = 50


class TagNotFoundError(Exception):
    pass


class TagValidationError(ValueError):
    pass


class DuplicateTagError(Exception):
    pass


def generate_slug(name: str) -> str:
    """Return the URL slug for ``name``: ``"Weight Loss!"`` -> ``"weight-loss"``."""

    slug = re.sub(r"[^a-z0-9\s-]", "", name.lower())
    slug = re.sub(r"\s+", "-", slug)
    return re.sub(r"-+", "-", slug).strip()


def serialize_tag(tag: Tag) -> Dict[str, Any]:
    return {
        "id": tag.id,
        "name": tag.name,
        "slug": tag.slug,
        "usage_count": tag.usage_count or 0,
        "created_at": isoformat_utc(tag.created_at),
        "updated_at": isoformat_utc(tag.updated_at),
    }


def list_tags(
    session: Session, *, page: int = 1, limit: int = 10, search: Optional[str] = None
) -> Dict[str, Any]:
    """Return one page of tags, most used first."""

    page = max(1, page)
    limit = max(1, limit)
    query = select(Tag)
    count_query = select(func.count()).select_from(Tag)
    if search:
        pattern = f"%{search.strip()}%"
        query = query.where(Tag.name.ilike(pattern))
        count_query = count_query.where(Tag.name.ilike(pattern))
    total = session.execute(count_query).scalar_one()
    rows = session.execute(
        query.order_by(Tag.usage_count.desc(), Tag.name.asc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars()
    return {
        "tags": [serialize_tag(tag) for tag in rows],
        "total": total,
        "page": page,
        "limit": limit,
        "totalPages": math.ceil(total / limit),
    }


def _clean_name(name: Optional[str]) -> str:
    cleaned = sanitize_text(name or "")
    if not cleaned:
        raise TagValidationError("Tag name is required")
    if len(cleaned) > MAX_TAG_NAME_LENGTH:
        raise TagValidationError(f"Tag name must be {MAX_TAG_NAME_LENGTH} characters or less")
    return cleaned


def _ensure_unique(session: Session, name: str, exclude_id: Optional[str] = None) -> None:
    query = select(Tag.id).where(Tag.name == name)
    if exclude_id:
        query = query.where(Tag.id != exclude_id)
    if session.execute(query.limit(1)).first() is not None:
        raise DuplicateTagError("A tag with this name already exists")


def _get_tag(session: Session, tag_id: str) -> Tag:
    tag = session.get(Tag, tag_id)
    if tag is None:
        raise TagNotFoundError("Tag not found")
    return tag


def create_tag(session: Session, name: Optional[str]) -> Tag:
    cleaned = _clean_name(name)
    _ensure_unique(session, cleaned)
    tag = Tag(name=cleaned, slug=generate_slug(cleaned), usage_count=0)
    session.add(tag)
    session.flush()
    tag_mutations_total.labels(action="create", outcome="ok").inc()
    logger.info("tag_created", tag_id=tag.id, name=tag.name)
    return tag


def update_tag(session: Session, tag_id: str, name: Optional[str]) -> Tag:
    cleaned = _clean_name(name)
    tag = _get_tag(session, tag_id)
    _ensure_unique(session, cleaned, exclude_id=tag_id)
    tag.name = cleaned
    tag.slug = generate_slug(cleaned)
    tag.updated_at = utc_now()
    session.flush()
    tag_mutations_total.labels(action="update", outcome="ok").inc()
    logger.info("tag_updated", tag_id=tag.id, name=tag.name)
    return tag


def delete_tag(session: Session, tag_id: str) -> int:
    """Delete a tag and strip its name from every resource.

    Returns the number of resources that referenced the tag.
    """

    tag = _get_tag(session, tag_id)
    resources_updated = 0
    for resource in session.execute(select(Resource)).scalars():
        current = list(resource.tags or [])
        if tag.name not in current:
            continue
        resource.tags = [name for name in current if name != tag.name]
        resources_updated += 1
    session.delete(tag)
    session.flush()
    tag_mutations_total.labels(action="delete", outcome="ok").inc()
    logger.info("tag_deleted", tag_id=tag_id, resources_updated=resources_updated)
    return resources_updated


__all__ = [
    "DuplicateTagError",
    "MAX_TAG_NAME_LENGTH",
    "TagNotFoundError",
    "TagValidationError",
    "create_tag",
    "delete_tag",
    "generate_slug",
    "list_tags",
    "serialize_tag",
    "update_tag",
]
