"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class GiftingError(Exception):
    """Base exception for all auto-gift errors."""

    pass


# ============================================================================
# Validation Errors (caller mistakes - no state change)
# ============================================================================


class ValidationError(GiftingError):
    """Base for caller errors surfaced synchronously without a state change."""

    pass


class BudgetExceededError(ValidationError):
    """Raised when a selection costs more than the rule's budget."""

    def __init__(self, total_minor: int, budget_minor: int) -> None:
        self.total_minor = total_minor
        self.budget_minor = budget_minor
        super().__init__(
            f"Selection total {total_minor} exceeds budget limit {budget_minor}"
        )


class SpendingLimitExceededError(ValidationError):
    """Raised when a gift would push the user past a monthly or annual spending limit."""

    def __init__(self, period: str, spent_minor: int, amount_minor: int, limit_minor: int) -> None:
        self.period = period
        self.spent_minor = spent_minor
        self.amount_minor = amount_minor
        self.limit_minor = limit_minor
        super().__init__(
            f"Gift amount {amount_minor} would exceed {period} spending limit {limit_minor} "
            f"(already spent {spent_minor})"
        )


class EmptySelectionError(ValidationError):
    """Raised when an approval selects no products."""

    def __init__(self, execution_id: UUID) -> None:
        self.execution_id = execution_id
        super().__init__(f"At least one product must be selected for execution {execution_id}")


class UnknownProductError(ValidationError):
    """Raised when an approval references products that were never candidates."""

    def __init__(self, execution_id: UUID, product_ids: list[str]) -> None:
        self.execution_id = execution_id
        self.product_ids = product_ids
        super().__init__(
            f"Products {', '.join(product_ids)} are not candidates of execution {execution_id}"
        )


class MissingPaymentMethodError(ValidationError):
    """Raised when an order would be placed without a payment method."""

    def __init__(self, rule_id: UUID) -> None:
        self.rule_id = rule_id
        super().__init__(f"Rule {rule_id} has no payment method")


class MissingShippingAddressError(ValidationError):
    """Raised when an order would be placed without a shipping address."""

    def __init__(self, execution_id: UUID) -> None:
        self.execution_id = execution_id
        super().__init__(f"Execution {execution_id} has no shipping address")


class InvalidRuleError(ValidationError):
    """Raised when a rule violates its own invariants."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Invalid rule: {message}")


# ============================================================================
# Lookup Errors
# ============================================================================


class RuleNotFoundError(GiftingError):
    """Raised when a rule doesn't exist."""

    def __init__(self, rule_id: UUID) -> None:
        self.rule_id = rule_id
        super().__init__(f"Rule not found: {rule_id}")


class ExecutionNotFoundError(GiftingError):
    """Raised when an execution doesn't exist."""

    def __init__(self, execution_id: UUID) -> None:
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")


# ============================================================================
# State Errors
# ============================================================================


class InvalidTransitionError(GiftingError):
    """Raised when a status change is not allowed by the state machine."""

    def __init__(self, execution_id: UUID, from_status: str, to_status: str) -> None:
        self.execution_id = execution_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Execution {execution_id} cannot move from {from_status} to {to_status}"
        )


class ConcurrencyError(GiftingError):
    """Raised when concurrent modification detected."""

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent modification detected for {resource}")


# ============================================================================
# Capability Failures
# ============================================================================


class ProviderError(GiftingError):
    """Raised when an external capability fails outside its declared errors."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        self.message = message
        super().__init__(f"{provider} error: {message}")


class NoViableCandidatesError(GiftingError):
    """Raised when product selection finds nothing within budget."""

    def __init__(self, budget_minor: int, reason: str | None = None) -> None:
        self.budget_minor = budget_minor
        self.reason = reason
        super().__init__(
            f"No viable gift candidates within budget {budget_minor}"
            + (f": {reason}" if reason else "")
        )


class OrderPlacementError(GiftingError):
    """Base for Order Placer failures."""

    retryable: bool = True

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class AddressInvalidError(OrderPlacementError):
    """Raised when the fulfillment provider rejects the shipping address."""

    pass


class PaymentDeclinedError(OrderPlacementError):
    """Raised when the payment method is declined or detached."""

    retryable = False

    def __init__(self, message: str, detached: bool = False) -> None:
        self.detached = detached
        super().__init__(message)


class ProviderUnavailableError(OrderPlacementError):
    """Raised when the fulfillment provider cannot be reached or errors out."""

    pass


# ============================================================================
# Integrity & Auth
# ============================================================================


class WriteVerificationError(GiftingError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DataIntegrityError(GiftingError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class AuthenticationError(GiftingError):
    """Raised when authentication fails (invalid API key, invalid credentials)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
