"""
voicegate.services.tag_service — Tags & User Tag Assignments
=============================================================

Tags are soft-deleted only (``is_active=False``) so assignment history
keeps pointing at something.  Assignments follow two rules:

- **One row per (user, tag).**  Removing a tag deactivates the row;
  assigning it again reactivates that same row instead of inserting.
- **One primary tag per user.**  Marking a tag primary clears the flag on
  every other assignment of that user first, inside the same transaction.

The eligibility lookups (:func:`required_tags_for_event`,
:func:`active_tags_for_user`) only ever see active tags.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy import Engine, select, update
from sqlalchemy.orm import Session

from voicegate.database.engine import get_session
from voicegate.database.models import (
    EventRequiredTag,
    Tag,
    TagCategory,
    User,
    UserTag,
)
from voicegate.engine.eligibility import TagRef

logger = logging.getLogger(__name__)

_TAG_NAME_RE = re.compile(r"^[a-z0-9_]{2,50}$")
_COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")


class TagAssignmentError(ValueError):
    """An assignment could not be made (unknown or inactive tag, unknown user)."""


class AlreadyAssignedError(TagAssignmentError):
    """The user already holds the tag."""


@dataclass(slots=True)
class BulkAssignResult:
    succeeded: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": [{"user_id": uid, "error": err} for uid, err in self.failed.items()],
        }


# ---------------------------------------------------------------------------
# Tag definitions
# ---------------------------------------------------------------------------
def create_tag(
    engine: Engine,
    *,
    name: str,
    display_name: str,
    category: str = TagCategory.SKILL.value,
    color: str = "#6B7280",
    icon: str | None = None,
    description: str | None = None,
    is_assignable: bool = True,
    is_earnable: bool = False,
) -> Tag:
    """Create a tag.  Raises ``ValueError`` on bad input or a duplicate name."""
    if not _TAG_NAME_RE.match(name):
        raise ValueError("Tag name must be 2-50 chars of lowercase letters, digits, or _")
    if not _COLOR_RE.match(color):
        raise ValueError("Tag color must be a hex code like #FF5733")
    category = TagCategory(category).value

    with get_session(engine) as session:
        if session.scalar(select(Tag.id).where(Tag.name == name)) is not None:
            raise ValueError(f"Tag {name!r} already exists")
        tag = Tag(
            name=name,
            display_name=display_name,
            category=category,
            color=color,
            icon=icon,
            description=description,
            is_assignable=is_assignable,
            is_earnable=is_earnable,
        )
        session.add(tag)
        session.flush()
        session.refresh(tag)
    logger.info("Created tag %s (%s)", tag.name, tag.id)
    return tag


def list_tags(engine: Engine, *, active_only: bool = True, category: str | None = None) -> list[Tag]:
    with get_session(engine) as session:
        stmt = select(Tag).order_by(Tag.category, Tag.display_name)
        if active_only:
            stmt = stmt.where(Tag.is_active.is_(True))
        if category:
            stmt = stmt.where(Tag.category == category)
        return list(session.scalars(stmt).all())


def deactivate_tag(engine: Engine, tag_id: int) -> bool:
    """Soft-delete a tag.  Returns False if it doesn't exist."""
    with get_session(engine) as session:
        tag = session.get(Tag, tag_id)
        if tag is None:
            return False
        tag.is_active = False
    logger.info("Deactivated tag %s", tag_id)
    return True


def active_tag_ids(engine: Engine, tag_ids: Iterable[int]) -> set[int]:
    """Subset of *tag_ids* that exist and are active."""
    ids = set(tag_ids)
    if not ids:
        return set()
    with get_session(engine) as session:
        return set(session.scalars(
            select(Tag.id).where(Tag.id.in_(ids), Tag.is_active.is_(True))
        ).all())


def tag_to_dict(tag: Tag) -> dict:
    return {
        "id": tag.id,
        "name": tag.name,
        "display_name": tag.display_name,
        "description": tag.description,
        "category": tag.category,
        "color": tag.color,
        "icon": tag.icon,
        "is_active": tag.is_active,
        "is_assignable": tag.is_assignable,
        "is_earnable": tag.is_earnable,
    }


# ---------------------------------------------------------------------------
# Eligibility lookups
# ---------------------------------------------------------------------------
def required_tags_for_event(engine: Engine, event_id: int) -> list[TagRef]:
    """Active tags an event requires.  Deactivated tags no longer gate."""
    with get_session(engine) as session:
        rows = session.scalars(
            select(Tag)
            .join(EventRequiredTag, EventRequiredTag.tag_id == Tag.id)
            .where(EventRequiredTag.event_id == event_id, Tag.is_active.is_(True))
            .order_by(Tag.display_name)
        ).all()
        return [_ref(tag) for tag in rows]


def active_tags_for_user(engine: Engine, user_id: int) -> list[TagRef]:
    """Tags the user currently holds (active assignment on an active tag)."""
    with get_session(engine) as session:
        rows = session.execute(
            select(Tag, UserTag.is_primary)
            .join(UserTag, UserTag.tag_id == Tag.id)
            .where(
                UserTag.user_id == user_id,
                UserTag.is_active.is_(True),
                Tag.is_active.is_(True),
            )
            .order_by(UserTag.is_primary.desc(), UserTag.assigned_at.desc())
        ).all()
        return [_ref(tag, is_primary=primary) for tag, primary in rows]


def _ref(tag: Tag, *, is_primary: bool = False) -> TagRef:
    return TagRef(
        id=tag.id,
        name=tag.name,
        display_name=tag.display_name,
        category=tag.category,
        color=tag.color,
        icon=tag.icon,
        is_primary=bool(is_primary),
    )


# ---------------------------------------------------------------------------
# Assignments
# ---------------------------------------------------------------------------
def _clear_primary(session: Session, user_id: int, *, keep_id: int | None = None) -> None:
    stmt = update(UserTag).where(UserTag.user_id == user_id, UserTag.is_primary.is_(True))
    if keep_id is not None:
        stmt = stmt.where(UserTag.id != keep_id)
    session.execute(stmt.values(is_primary=False))
    session.flush()


def _assign(
    session: Session,
    user_id: int,
    tag_id: int,
    *,
    assigned_by: int | None,
    is_primary: bool,
    notes: str | None,
) -> UserTag:
    tag = session.get(Tag, tag_id)
    if tag is None or not tag.is_active:
        raise TagAssignmentError("Tag not found or inactive")
    if assigned_by is not None and not tag.is_assignable:
        raise TagAssignmentError(f"Tag {tag.name!r} cannot be assigned manually")
    if session.get(User, user_id) is None:
        raise TagAssignmentError("User not found")

    row = session.scalar(
        select(UserTag).where(UserTag.user_id == user_id, UserTag.tag_id == tag_id)
    )
    if row is not None and row.is_active:
        raise AlreadyAssignedError("User already has this tag")

    if is_primary:
        _clear_primary(session, user_id)

    if row is None:
        row = UserTag(user_id=user_id, tag_id=tag_id)
        session.add(row)
    row.is_active = True
    row.is_primary = is_primary
    row.assigned_by = assigned_by
    row.assigned_at = datetime.now(UTC)
    row.notes = notes
    session.flush()
    return row


def assign_tag(
    engine: Engine,
    user_id: int,
    tag_id: int,
    *,
    assigned_by: int | None = None,
    is_primary: bool = False,
    notes: str | None = None,
) -> UserTag:
    """Give *user_id* the tag, reactivating an earlier assignment if one exists.

    ``assigned_by=None`` records a self-earned tag.

    Raises
    ------
    TagAssignmentError
        Unknown/inactive tag, non-assignable tag, unknown user, or the user
        already holds it.
    """
    with get_session(engine) as session:
        row = _assign(
            session, user_id, tag_id,
            assigned_by=assigned_by, is_primary=is_primary, notes=notes,
        )
    logger.info("Assigned tag %s to user %s (by %s)", tag_id, user_id, assigned_by)
    return row


def remove_tag(engine: Engine, user_id: int, tag_id: int) -> bool:
    """Deactivate an assignment.  Returns False if the user didn't hold it."""
    with get_session(engine) as session:
        row = session.scalar(
            select(UserTag).where(
                UserTag.user_id == user_id,
                UserTag.tag_id == tag_id,
                UserTag.is_active.is_(True),
            )
        )
        if row is None:
            return False
        row.is_active = False
        row.is_primary = False
    logger.info("Removed tag %s from user %s", tag_id, user_id)
    return True


def set_primary_tag(engine: Engine, user_id: int, tag_id: int) -> bool:
    """Make an active assignment the user's only primary tag."""
    with get_session(engine) as session:
        row = session.scalar(
            select(UserTag).where(
                UserTag.user_id == user_id,
                UserTag.tag_id == tag_id,
                UserTag.is_active.is_(True),
            )
        )
        if row is None:
            return False
        _clear_primary(session, user_id, keep_id=row.id)
        row.is_primary = True
    return True


def bulk_assign_tag(
    engine: Engine,
    user_ids: Iterable[int],
    tag_id: int,
    *,
    assigned_by: int | None = None,
) -> BulkAssignResult:
    """Assign one tag to many users; each user is its own transaction.

    Users already holding the tag are *skipped*; any other error lands in
    ``failed`` and the loop moves on.
    """
    result = BulkAssignResult()
    for user_id in dict.fromkeys(user_ids):
        try:
            with get_session(engine) as session:
                _assign(
                    session, user_id, tag_id,
                    assigned_by=assigned_by, is_primary=False, notes=None,
                )
            result.succeeded.append(user_id)
        except AlreadyAssignedError:
            result.skipped.append(user_id)
        except TagAssignmentError as exc:
            result.failed[user_id] = str(exc)
        except Exception as exc:
            logger.exception("Bulk tag assignment failed for user %s", user_id)
            result.failed[user_id] = str(exc)

    logger.info(
        "Bulk assigned tag %s: %d succeeded, %d skipped, %d failed",
        tag_id, len(result.succeeded), len(result.skipped), len(result.failed),
    )
    return result
