"""Identifier generation and parsing.

Root task ids are ``gur-`` followed by 8 lowercase hex characters drawn
from the operating system's secure random source. Subtask ids append
``.<n>`` segments to their parent's id, so ``gur-0a1b2c3d.2.1`` is the
first child of the second child of ``gur-0a1b2c3d``.
"""

import re
import secrets
from typing import NamedTuple

from gur.infrastructure.exceptions import InvalidIdentifierError, InvalidValueError
from gur.infrastructure.logger import get_logger

logger = get_logger(__name__)

TASK_PREFIX = "gur-"
GATE_PREFIX = "gate-"
HISTORY_PREFIX = "hist-"
TEMPLATE_PREFIX = "tmpl-"

TASK_ID_PATTERN = re.compile(r"gur-[0-9a-f]{8}(\.[1-9][0-9]*)*")
GATE_ID_PATTERN = re.compile(r"gate-[0-9a-f]{8}")


class Ancestry(NamedTuple):
    """Position of a task id in its hierarchy."""

    root_id: str
    parent_id: str
    depth: int


def _random_hex(nbytes: int) -> str:
    try:
        return secrets.token_bytes(nbytes).hex()
    except (OSError, NotImplementedError) as e:
        # No usable entropy means the host is broken; nothing downstream can recover.
        logger.critical("secure_random_unavailable", error=str(e))
        raise SystemExit(f"fatal: secure random source unavailable: {e}") from e


def new_root_id() -> str:
    """Generate a new root task id (``gur-`` + 8 hex chars)."""
    return TASK_PREFIX + _random_hex(4)


def new_gate_id() -> str:
    return GATE_PREFIX + _random_hex(4)


def new_history_id() -> str:
    return HISTORY_PREFIX + _random_hex(8)


def new_template_id() -> str:
    return TEMPLATE_PREFIX + _random_hex(4)


def derive_subtask_id(ancestor_id: str, ordinal: int) -> str:
    """Compose a subtask id from its parent id and sibling ordinal.

    The caller supplies ``ordinal`` as one more than the number of
    subtasks ever created under the parent.

    Args:
        ancestor_id: Id of the immediate parent
        ordinal: Positive sibling position

    Returns:
        ``<ancestor_id>.<ordinal>``

    Raises:
        InvalidValueError: If ordinal is not positive
    """
    if ordinal < 1:
        raise InvalidValueError(f"subtask ordinal must be positive, got {ordinal}")
    return f"{ancestor_id}.{ordinal}"


def parse_ancestry(task_id: str) -> Ancestry:
    """Split a task id into root id, immediate parent id and depth.

    Roots have an empty parent id and depth 0.
    """
    root_id, _, suffix = task_id.partition(".")
    if not suffix:
        return Ancestry(root_id=root_id, parent_id="", depth=0)
    parent_id = task_id.rsplit(".", 1)[0]
    return Ancestry(root_id=root_id, parent_id=parent_id, depth=suffix.count(".") + 1)


def is_valid_task_id(task_id: str) -> bool:
    return TASK_ID_PATTERN.fullmatch(task_id) is not None


def validate_task_id(task_id: str) -> str:
    """Return task_id unchanged or raise InvalidIdentifierError."""
    if not is_valid_task_id(task_id):
        raise InvalidIdentifierError(task_id)
    return task_id


def validate_gate_id(gate_id: str) -> str:
    if GATE_ID_PATTERN.fullmatch(gate_id) is None:
        raise InvalidIdentifierError(gate_id, kind="gate")
    return gate_id
