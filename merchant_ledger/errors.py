"""
Error taxonomy for the ledger and settlement engine.

Every business failure derives from LedgerServiceError and is returned to
callers inside the normal response envelope. PersistenceFailure is the only
kind the HTTP layer distinguishes at the transport level.
"""

from typing import Optional


class LedgerServiceError(Exception):
    kind = "error"

    def __init__(self, message: str = ""):
        self.message = message or self.__class__.__doc__ or self.__class__.__name__
        super().__init__(self.message)


# -- validation ---------------------------------------------------------------

class ValidationError(LedgerServiceError):
    kind = "validation"


class InvalidAmountError(ValidationError):
    """Invalid amount"""


class BelowMinimumError(ValidationError):
    """Amount is below the minimum withdrawal amount"""


class RemarkRequiredError(ValidationError):
    """A rejection reason is required"""


class EmptyBatchError(ValidationError):
    """No records selected"""


# -- lookups ------------------------------------------------------------------

class NotFoundError(LedgerServiceError):
    kind = "not_found"


class MerchantNotFoundError(NotFoundError):
    """Merchant does not exist"""


class OrderNotFoundError(NotFoundError):
    """Order does not exist"""


class RecordNotFoundError(NotFoundError):
    """Settlement record does not exist"""


class SettlementAccountNotFoundError(NotFoundError):
    """Settlement account does not exist"""


class ChannelNotFoundError(NotFoundError):
    """Payment channel does not exist"""


# -- state conflicts ----------------------------------------------------------

class StateConflictError(LedgerServiceError):
    kind = "state_conflict"


class AlreadyProcessedError(StateConflictError):
    """This request has already been processed"""


class AlreadyRejectedError(AlreadyProcessedError):
    """This request has already been rejected"""


class InvalidStateTransitionError(StateConflictError):
    """Transition not allowed"""


# -- business rules -----------------------------------------------------------

class BusinessRuleError(LedgerServiceError):
    kind = "business_rule"


class InsufficientBalanceError(BusinessRuleError):
    """Insufficient balance"""


class ExceedsCapError(BusinessRuleError):
    """Refund amount exceeds the refundable amount"""


class FeatureDisabledError(BusinessRuleError):
    """Self-service refund has not been enabled by the administrator"""


class InvalidOrderStateError(BusinessRuleError):
    """Order status does not allow a refund"""


class FullyRefundedError(BusinessRuleError):
    """Order has already been fully refunded"""


class NoUpstreamReferenceError(BusinessRuleError):
    """Order has no upstream trade number and cannot be refunded in place"""


class RefundUnsupportedError(BusinessRuleError):
    """This payment channel does not support in-place refunds"""


class SettleMethodDisabledError(BusinessRuleError):
    """This settlement method is not enabled"""


# -- infrastructure -----------------------------------------------------------

class UpstreamFailure(LedgerServiceError):
    """Upstream channel call failed"""

    kind = "upstream"

    def __init__(self, message: str = "", upstream_message: Optional[str] = None):
        super().__init__(message)
        self.upstream_message = upstream_message


class PersistenceFailure(LedgerServiceError):
    """Operation failed, please retry"""

    kind = "persistence"
