"""
voicegate.database.seed — Default Tag Catalogue
================================================

Baseline tags seeded on first startup so events can be gated right away.

Idempotent: only inserts tag names that don't already exist.  Tags edited
or deactivated by admins are never overwritten.
"""

from __future__ import annotations

import logging

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from voicegate.database.models import Tag, TagCategory

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Default tag catalogue
# ---------------------------------------------------------------------------
DEFAULT_TAGS: dict[str, tuple[str, str, TagCategory, str, str, bool, bool]] = {
    # Skill tags
    "array101": (
        "Array Master", "Expert in array manipulation and algorithms",
        TagCategory.SKILL, "#FF5733", "\U0001f522", True, True,
    ),
    "tree_master": (
        "Tree Expert", "Mastered tree data structures and algorithms",
        TagCategory.SKILL, "#33FF57", "\U0001f333", True, True,
    ),
    "dp_ninja": (
        "DP Ninja", "Dynamic Programming specialist",
        TagCategory.SKILL, "#3357FF", "⚡", True, True,
    ),
    "graph_guru": (
        "Graph Guru", "Graph algorithms expert",
        TagCategory.SKILL, "#FF33F5", "\U0001f578️", True, True,
    ),
    "string_wizard": (
        "String Wizard", "String manipulation master",
        TagCategory.SKILL, "#F5FF33", "\U0001fa84", True, True,
    ),
    # Achievement tags
    "problem_solver": (
        "Problem Solver", "Solved 100+ problems",
        TagCategory.ACHIEVEMENT, "#FFB133", "\U0001f3c6", False, True,
    ),
    "speed_demon": (
        "Speed Demon", "Consistently fast problem solving",
        TagCategory.ACHIEVEMENT, "#FF3333", "⚡", False, True,
    ),
    "helper": (
        "Community Helper", "Actively helps other members",
        TagCategory.ACHIEVEMENT, "#33FFFF", "\U0001f91d", True, False,
    ),
    # Special tags
    "contest_winner": (
        "Contest Winner", "Won a coding contest",
        TagCategory.SPECIAL, "#FFD700", "\U0001f451", True, False,
    ),
    "mentor": (
        "Mentor", "Mentors junior developers",
        TagCategory.SPECIAL, "#9D33FF", "\U0001f3af", True, False,
    ),
    "early_adopter": (
        "Early Adopter", "One of the first community members",
        TagCategory.SPECIAL, "#33FF99", "\U0001f31f", True, False,
    ),
}
"""``name`` → ``(display_name, description, category, color, icon, is_assignable, is_earnable)``."""


# ---------------------------------------------------------------------------
# Seeder
# ---------------------------------------------------------------------------
def seed_default_tags(engine: Engine) -> int:
    """Insert default tags whose names don't exist yet.  Returns the count added."""
    session = Session(engine)
    inserted = 0
    try:
        existing = set(session.scalars(select(Tag.name)).all())
        for name, (display, desc, category, color, icon, assignable, earnable) in DEFAULT_TAGS.items():
            if name in existing:
                continue
            session.add(Tag(
                name=name,
                display_name=display,
                description=desc,
                category=category.value,
                color=color,
                icon=icon,
                is_assignable=assignable,
                is_earnable=earnable,
            ))
            inserted += 1
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    if inserted:
        logger.info("Seeded %d default tags.", inserted)
    return inserted
