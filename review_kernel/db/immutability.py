"""
ORM-Level Append-Only Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Balances are derived from ledger entries and an activity's history is read
from its state log.  If either could be edited after the fact, a balance or
a stage history could silently change.  Template definitions are frozen so a
running activity is always interpreted against the graph it started with.

SQLAlchemy fires events before UPDATE/DELETE operations reach the database.
The listeners below intercept those events and raise
ImmutabilityViolationError, aborting the flush:

    session.flush()
         |
         v
    [before_update / before_delete] --> _forbid_*() --> ImmutabilityViolationError

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                 | When Immutable                  | Allowed changes
-----------------------|---------------------------------|------------------------------
LedgerEntry            | ALWAYS                          | none
StateLogEntry          | ALWAYS                          | none
AwardRecord            | ALWAYS                          | none
StageDefinition        | ALWAYS                          | none
TransitionDefinition   | ALWAYS                          | none
RankReward             | ALWAYS                          | none
WorkflowTemplate       | Structural fields, always       | is_active, updated_at/by
                       | Row deletion, always            |

===============================================================================
USAGE
===============================================================================

Called once at application startup:

    from review_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()

To temporarily disable (TESTS ONLY):

    unregister_immutability_listeners()
"""

from sqlalchemy import event, inspect

from review_kernel.exceptions import ImmutabilityViolationError
from review_kernel.logging_config import get_logger

logger = get_logger("db.immutability")

# Fields that may change on a WorkflowTemplate after registration
_TEMPLATE_MUTABLE_FIELDS = frozenset({"is_active", "updated_at", "updated_by_id"})


def _blocked(target, operation: str, reason: str) -> ImmutabilityViolationError:
    entity_type = type(target).__name__
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
            "reason": reason,
        },
    )
    return ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _forbid_update(mapper, connection, target):
    raise _blocked(target, "UPDATE", "record is append-only")


def _forbid_delete(mapper, connection, target):
    raise _blocked(target, "DELETE", "record is append-only")


def _check_template_structural_immutability(mapper, connection, target):
    """Allow retiring a template; block every other field change."""
    insp = inspect(target)
    for attr in insp.attrs:
        if attr.key in _TEMPLATE_MUTABLE_FIELDS:
            continue
        if attr.history.has_changes():
            raise _blocked(
                target,
                "UPDATE",
                f"Cannot modify field '{attr.key}' on a registered template; "
                "register a new version instead",
            )


def _forbid_template_delete(mapper, connection, target):
    raise _blocked(target, "DELETE", "templates are retired, never deleted")


def _listener_table():
    from review_kernel.models.activity import StateLogEntry
    from review_kernel.models.ledger import LedgerEntry
    from review_kernel.models.team import AwardRecord
    from review_kernel.models.template import (
        RankReward,
        StageDefinition,
        TransitionDefinition,
        WorkflowTemplate,
    )

    table = []
    for model in (
        LedgerEntry,
        StateLogEntry,
        AwardRecord,
        StageDefinition,
        TransitionDefinition,
        RankReward,
    ):
        table.append((model, "before_update", _forbid_update))
        table.append((model, "before_delete", _forbid_delete))
    table.append((WorkflowTemplate, "before_update", _check_template_structural_immutability))
    table.append((WorkflowTemplate, "before_delete", _forbid_template_delete))
    return table


def register_immutability_listeners() -> None:
    """Register all append-only enforcement listeners (idempotent)."""
    for model, identifier, fn in _listener_table():
        if not event.contains(model, identifier, fn):
            event.listen(model, identifier, fn)
    logger.debug("immutability_listeners_registered")


def unregister_immutability_listeners() -> None:
    """Remove all append-only enforcement listeners. FOR TESTING ONLY."""
    for model, identifier, fn in _listener_table():
        if event.contains(model, identifier, fn):
            event.remove(model, identifier, fn)
