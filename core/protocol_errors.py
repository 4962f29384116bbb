"""
Error types for the HAI Protocol model.

Every error derives from ProtocolError, itself a ValueError, so code that
catches ValueError around protocol calls keeps working. The four branches
separate the failure classes:

- PreconditionError: an eligibility, authorization or shutdown check failed
  before any state was touched
- SizingError: a liquidation or bid would be null, dusty or empty, which points
  at configuration or market state rather than at the caller
- InvariantViolation: an external callback broke a ledger invariant; fatal to
  the whole transition
- ArithmeticUnderflow: a balance would go negative

Saviour failures are deliberately absent: they are reported as events and
never raised.
"""


class ProtocolError(ValueError):
    """Base error class for protocol errors"""
    pass


class ArithmeticUnderflow(ProtocolError):
    """A balance or counter would go below zero"""
    pass


# --- Precondition violations ---

class PreconditionError(ProtocolError):
    pass


class Unauthorized(PreconditionError):
    pass


class ContractNotEnabled(PreconditionError):
    pass


class CollateralTypeAlreadyInitialized(PreconditionError):
    pass


class CollateralTypeNotInitialized(PreconditionError):
    pass


class UnrecognizedParam(PreconditionError):
    pass


class InvalidParameter(PreconditionError):
    pass


class NotSAFEAllowed(PreconditionError):
    """Caller may not modify the position"""
    pass


class NotCollateralSrcAllowed(PreconditionError):
    pass


class NotDebtDstAllowed(PreconditionError):
    pass


class NotSafeToModify(PreconditionError):
    """The modification would leave the position under its safety price"""
    pass


class CeilingExceeded(PreconditionError):
    pass


class DustySAFEDebt(PreconditionError):
    """Position debt would be non-zero but below the debt floor"""
    pass


class SAFEDebtCeilingHit(PreconditionError):
    pass


class SAFENotUnsafe(PreconditionError):
    pass


class LiquidationLimitHit(PreconditionError):
    pass


class RedemptionPriceNotUpdated(PreconditionError):
    pass


class SaviourNotAuthorized(PreconditionError):
    pass


class SaviourNotOk(PreconditionError):
    pass


class InvalidSaviourAmounts(PreconditionError):
    pass


class ReentrantCall(PreconditionError):
    pass


class AuctionNotFound(PreconditionError):
    pass


class InactiveAuction(PreconditionError):
    pass


class InvalidBid(PreconditionError):
    pass


class InvalidCollateralPrice(PreconditionError):
    pass


class DebtQueueEmpty(PreconditionError):
    pass


class DebtQueueDelayNotPassed(PreconditionError):
    pass


class InsufficientDebt(PreconditionError):
    pass


class InsufficientCoins(PreconditionError):
    pass


class InsufficientBalance(PreconditionError):
    pass


# --- Sizing violations ---

class SizingError(ProtocolError):
    pass


class NullAuction(SizingError):
    pass


class DustySAFE(SizingError):
    """A partial liquidation would leave a debt remainder below the floor"""
    pass


class NullCollateralToSell(SizingError):
    pass


class NullBoughtAmount(SizingError):
    pass


class InvalidLeftToRaise(SizingError):
    pass


# --- Invariant violations after an external callback ---

class InvariantViolation(ProtocolError):
    pass


class InvalidSaviourOperation(InvariantViolation):
    """A saviour removed collateral from, or added debt to, the position"""
    pass
