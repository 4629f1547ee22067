class ProtocolError(Exception):
    """Base class for every rejected protocol operation."""
    pass


class AuthorizationError(ProtocolError):
    """Caller lacks the role or registration the operation requires."""
    pass


class NotVenueOwnerError(AuthorizationError):
    """Caller is not the owner of the venue."""
    pass


class NotFoundError(ProtocolError):
    """Unknown venue, assignment or report month."""
    pass


class StateError(ProtocolError):
    """Operation is not allowed in the current state."""
    pass


class ReentrancyError(StateError):
    """Operation was entered again while still executing."""
    pass


class NoShortfallError(StateError):
    """Report has no missing revenue to settle."""
    pass


class InsufficientResourceError(ProtocolError):
    """Stake, balance or escrow is too low."""
    pass


class TransferError(ProtocolError):
    """Collateral asset refused a transfer."""
    pass


class ValidationError(ProtocolError):
    """Malformed input: zero amounts, mismatched lengths, too few underwriters."""
    pass


class ConfigError(ValidationError):
    """Invalid protocol or scenario configuration."""
    pass
