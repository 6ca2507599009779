"""
Typed Exception Hierarchy for the Review Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

A workflow engine that moves tokens must report failures precisely. Callers
(request handlers, the periodic sweep, admin tooling) decide whether to retry,
reject, or alert based on the KIND of failure, never on message wording.

Every exception in this module has:
  1. A TYPED class (catch by type, not message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. A KIND class attribute (ErrorKind, the coarse category callers branch on)
  4. Structured DATA attributes (not just a message string)

Example - RIGHT way:
    try:
        engine.fund_escrow(activity_id, user_id, 5)
    except InsufficientBalanceError as e:
        api_response(code=e.code, balance=e.balance, requested=e.requested)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    ReviewKernelError (base)
    |
    +-- ValidationError                      kind=VALIDATION
    |   +-- NonPositiveAmountError
    |   +-- EscrowCeilingExceededError
    |   +-- ActionNotAllowedError
    |   +-- ActivityNotActiveError
    |   +-- EnrollmentClosedError
    |   +-- TeamFullError
    |   +-- DuplicateMembershipError
    |   +-- AuthorCannotReviewError
    |   +-- NotAParticipantError
    |   +-- SelfAwardError
    |   +-- DuplicateAwardError
    |   +-- DuplicateSubmissionError
    |   +-- DuplicateTemplateError
    |   +-- TemplateRetiredError
    |
    +-- NotFoundError                        kind=NOT_FOUND
    |   +-- ActivityNotFoundError
    |   +-- TemplateNotFoundError
    |   +-- AccountNotFoundError
    |   +-- MembershipNotFoundError
    |
    +-- InsufficientBalanceError             kind=INSUFFICIENT_BALANCE
    |
    +-- StructuralError                      kind=STRUCTURAL
    |   +-- UnknownPredicateError
    |   +-- MalformedExpressionError
    |   +-- InvalidTransitionError
    |   +-- TemplateValidationError
    |
    +-- ConcurrencyConflictError             kind=CONCURRENCY_CONFLICT
    |
    +-- ImmutabilityViolationError           kind=STRUCTURAL
    |
    +-- InternalEngineError                  kind=INTERNAL

===============================================================================
HANDLING PATTERNS
===============================================================================

1. LEDGER PRIMITIVES return a LedgerResult at the engine facade; the error
   object (with code and kind) is attached to the failed result.

2. CONCURRENCY CONFLICTS are the only retryable kind. The engine never
   retries internally; the caller re-runs the whole operation.

3. STRUCTURAL ERRORS are configuration faults. They are raised while a
   template is registered (blocking it) or when an edge is forced that the
   template graph does not contain. They are never downgraded to warnings.

4. INTERNAL ERRORS wrap unexpected faults. The original exception is
   chained (__cause__) and its type name is kept on the error.

===============================================================================
"""

from enum import Enum
from typing import Sequence


class ErrorKind(str, Enum):
    """Coarse failure category every kernel error belongs to."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    STRUCTURAL = "structural"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    INTERNAL = "internal"


class ReviewKernelError(Exception):
    """
    Base exception for all review kernel errors.

    All subclasses must have `code` and `kind` class attributes.
    """

    code: str = "REVIEW_KERNEL_ERROR"
    kind: ErrorKind = ErrorKind.INTERNAL


# Validation


class ValidationError(ReviewKernelError):
    """A request was rejected by a precondition check."""

    code: str = "VALIDATION_ERROR"
    kind: ErrorKind = ErrorKind.VALIDATION


class NonPositiveAmountError(ValidationError):
    """Token amounts moved by the ledger must be strictly positive."""

    code: str = "NON_POSITIVE_AMOUNT"

    def __init__(self, amount: int):
        self.amount = amount
        super().__init__(f"Amount must be positive, got {amount}")


class EscrowCeilingExceededError(ValidationError):
    """Funding would push escrow above the activity's funding amount."""

    code: str = "ESCROW_CEILING_EXCEEDED"

    def __init__(self, activity_id: str, escrow_balance: int, amount: int, funding_amount: int):
        self.activity_id = activity_id
        self.escrow_balance = escrow_balance
        self.amount = amount
        self.funding_amount = funding_amount
        super().__init__(
            f"Escrow for activity {activity_id} would reach "
            f"{escrow_balance + amount}, above funding amount {funding_amount}"
        )


class ActionNotAllowedError(ValidationError):
    """A participant action is not valid in the activity's current stage."""

    code: str = "ACTION_NOT_ALLOWED"

    def __init__(self, action: str, stage_key: str, reason: str):
        self.action = action
        self.stage_key = stage_key
        self.reason = reason
        super().__init__(f"Action {action} not allowed in stage {stage_key}: {reason}")


class ActivityNotActiveError(ValidationError):
    """The activity already reached a terminal stage."""

    code: str = "ACTIVITY_NOT_ACTIVE"

    def __init__(self, activity_id: str, status: str):
        self.activity_id = activity_id
        self.status = status
        super().__init__(f"Activity {activity_id} is {status}")


class EnrollmentClosedError(ValidationError):
    """The activity has left its open-enrollment stage."""

    code: str = "ENROLLMENT_CLOSED"

    def __init__(self, activity_id: str, stage_key: str):
        self.activity_id = activity_id
        self.stage_key = stage_key
        super().__init__(
            f"Activity {activity_id} no longer accepts reviewers (stage {stage_key})"
        )


class TeamFullError(ValidationError):
    """The reviewer team is at capacity."""

    code: str = "TEAM_FULL"

    def __init__(self, activity_id: str, capacity: int):
        self.activity_id = activity_id
        self.capacity = capacity
        super().__init__(f"Reviewer team for activity {activity_id} is full ({capacity})")


class DuplicateMembershipError(ValidationError):
    """The user already holds a membership on this activity."""

    code: str = "DUPLICATE_MEMBERSHIP"

    def __init__(self, activity_id: str, user_id: str):
        self.activity_id = activity_id
        self.user_id = user_id
        super().__init__(f"User {user_id} already joined activity {activity_id}")


class AuthorCannotReviewError(ValidationError):
    """The activity's creator cannot join its own reviewer team."""

    code: str = "AUTHOR_CANNOT_REVIEW"

    def __init__(self, activity_id: str, user_id: str):
        self.activity_id = activity_id
        self.user_id = user_id
        super().__init__(f"User {user_id} created activity {activity_id} and cannot review it")


class NotAParticipantError(ValidationError):
    """The user has no active role on the activity."""

    code: str = "NOT_A_PARTICIPANT"

    def __init__(self, activity_id: str, user_id: str, role: str):
        self.activity_id = activity_id
        self.user_id = user_id
        self.role = role
        super().__init__(f"User {user_id} is not an active {role} on activity {activity_id}")


class SelfAwardError(ValidationError):
    """Participants cannot award themselves."""

    code: str = "SELF_AWARD"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} cannot give an award to themselves")


class DuplicateAwardError(ValidationError):
    """The giver already used this award kind on the activity."""

    code: str = "DUPLICATE_AWARD"

    def __init__(self, activity_id: str, giver_id: str, award_kind: str):
        self.activity_id = activity_id
        self.giver_id = giver_id
        self.award_kind = award_kind
        super().__init__(
            f"User {giver_id} already gave a {award_kind} award on activity {activity_id}"
        )


class DuplicateSubmissionError(ValidationError):
    """A review or author response for this round already exists."""

    code: str = "DUPLICATE_SUBMISSION"

    def __init__(self, activity_id: str, user_id: str, round_number: int):
        self.activity_id = activity_id
        self.user_id = user_id
        self.round_number = round_number
        super().__init__(
            f"User {user_id} already submitted for round {round_number} "
            f"of activity {activity_id}"
        )


class DuplicateTemplateError(ValidationError):
    """A template with this name and version is already registered."""

    code: str = "DUPLICATE_TEMPLATE"

    def __init__(self, name: str, version: int):
        self.name = name
        self.version = version
        super().__init__(f"Template {name} v{version} already registered")


class TemplateRetiredError(ValidationError):
    """New activities cannot attach to a retired template."""

    code: str = "TEMPLATE_RETIRED"

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Template {template_id} is retired")


# Not found


class NotFoundError(ReviewKernelError):
    """A referenced record does not exist."""

    code: str = "NOT_FOUND"
    kind: ErrorKind = ErrorKind.NOT_FOUND


class ActivityNotFoundError(NotFoundError):
    code: str = "ACTIVITY_NOT_FOUND"

    def __init__(self, activity_id: str):
        self.activity_id = activity_id
        super().__init__(f"Activity not found: {activity_id}")


class TemplateNotFoundError(NotFoundError):
    code: str = "TEMPLATE_NOT_FOUND"

    def __init__(self, template_ref: str):
        self.template_ref = template_ref
        super().__init__(f"Template not found: {template_ref}")


class AccountNotFoundError(NotFoundError):
    code: str = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_ref: str):
        self.account_ref = account_ref
        super().__init__(f"Wallet account not found: {account_ref}")


class MembershipNotFoundError(NotFoundError):
    code: str = "MEMBERSHIP_NOT_FOUND"

    def __init__(self, activity_id: str, user_id: str):
        self.activity_id = activity_id
        self.user_id = user_id
        super().__init__(f"User {user_id} has no membership on activity {activity_id}")


# Balance


class InsufficientBalanceError(ReviewKernelError):
    """The debited account does not hold enough tokens."""

    code: str = "INSUFFICIENT_BALANCE"
    kind: ErrorKind = ErrorKind.INSUFFICIENT_BALANCE

    def __init__(self, account_ref: str, balance: int, requested: int):
        self.account_ref = account_ref
        self.balance = balance
        self.requested = requested
        super().__init__(
            f"Insufficient balance on {account_ref}: has {balance}, needs {requested}"
        )


# Structural


class StructuralError(ReviewKernelError):
    """The template graph or a condition expression is malformed."""

    code: str = "STRUCTURAL_ERROR"
    kind: ErrorKind = ErrorKind.STRUCTURAL


class UnknownPredicateError(StructuralError):
    """A condition leaf names a predicate with no registered implementation."""

    code: str = "UNKNOWN_PREDICATE"

    def __init__(self, predicate: str):
        self.predicate = predicate
        super().__init__(f"Unknown predicate: {predicate}")


class MalformedExpressionError(StructuralError):
    """A condition node is neither a valid leaf nor a valid operator node."""

    code: str = "MALFORMED_EXPRESSION"

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Malformed condition at {path}: {reason}")


class InvalidTransitionError(StructuralError):
    """No edge of the template graph leads from the current stage to the target."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, activity_id: str, from_stage: str, to_stage: str, reason: str):
        self.activity_id = activity_id
        self.from_stage = from_stage
        self.to_stage = to_stage
        self.reason = reason
        super().__init__(
            f"Invalid transition {from_stage} -> {to_stage} "
            f"for activity {activity_id}: {reason}"
        )


class TemplateValidationError(StructuralError):
    """Template graph validation found one or more structural issues."""

    code: str = "TEMPLATE_VALIDATION_FAILED"

    def __init__(self, template_name: str, issues: Sequence):
        self.template_name = template_name
        self.issues = list(issues)
        summary = "; ".join(str(issue) for issue in self.issues)
        super().__init__(f"Template {template_name} is invalid: {summary}")


# Concurrency


class ConcurrencyConflictError(ReviewKernelError):
    """Lock contention or a serialization failure aborted the transaction.

    The caller is expected to retry the whole operation.
    """

    code: str = "CONCURRENCY_CONFLICT"
    kind: ErrorKind = ErrorKind.CONCURRENCY_CONFLICT

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Concurrent modification during {operation}: {detail}")


# Immutability


class ImmutabilityViolationError(ReviewKernelError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"
    kind: ErrorKind = ErrorKind.STRUCTURAL

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")


# Internal


class InternalEngineError(ReviewKernelError):
    """An unexpected fault inside the engine."""

    code: str = "INTERNAL_ENGINE_ERROR"
    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, operation: str, original_type: str, detail: str):
        self.operation = operation
        self.original_type = original_type
        self.detail = detail
        super().__init__(f"Internal error during {operation}: {original_type}: {detail}")
