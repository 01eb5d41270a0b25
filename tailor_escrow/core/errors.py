class EscrowEngineError(Exception):
    pass


class NotFoundError(EscrowEngineError):
    pass


class ConflictError(EscrowEngineError):
    pass


class ValidationError(EscrowEngineError):
    pass


class EscrowNotFoundError(NotFoundError):
    pass


class MilestoneNotFoundError(NotFoundError):
    pass


class DisputeNotFoundError(NotFoundError):
    pass


class InvalidAmountError(ValidationError):
    pass


class OverpaymentError(ValidationError):
    pass


class RefundAmountRequiredError(ValidationError):
    pass


class InsufficientBalanceError(ValidationError):
    pass


class ProviderConfirmationMissingError(ValidationError):
    pass


class MilestoneValidationError(ValidationError):
    pass


class DisputeValidationError(ValidationError):
    pass


class StageMismatchError(ConflictError):
    pass


class OutOfOrderReleaseError(ConflictError):
    pass


class OutOfSequenceError(ConflictError):
    pass


class AlreadyDecidedError(ConflictError):
    pass


class EscrowAlreadyInitializedError(ConflictError):
    pass


class PaymentReferenceConflictError(ConflictError):
    pass


class LedgerConcurrencyError(ConflictError):
    pass


class MilestoneAlreadySubmittedError(ConflictError):
    pass


class DisputeTransitionError(ConflictError):
    pass


class SplitPolicyNotFoundError(NotFoundError):
    pass


class LedgerInvariantError(EscrowEngineError):
    pass
