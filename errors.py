"""Errors raised by swap order commands.

Every error is raised before the order is mutated, so a rejected command
leaves the stored order exactly as it was.
"""


class SwapOrderError(Exception):
    status_code = 400
    code = "swap_order_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SwapOrderError):
    """Missing or malformed input."""
    status_code = 400
    code = "validation_error"


class AuthenticationError(SwapOrderError):
    status_code = 401
    code = "authentication_error"


class AuthorizationError(SwapOrderError):
    """Caller is not a party to the order or acts outside their role."""
    status_code = 403
    code = "authorization_error"


class OrderNotFoundError(SwapOrderError):
    status_code = 404
    code = "not_found"


class StateConflictError(SwapOrderError):
    """Action is not valid for the order's current state."""
    status_code = 400
    code = "state_conflict"


class TerminalStateError(StateConflictError):
    status_code = 409
    code = "terminal_state"


class ConcurrentUpdateError(StateConflictError):
    status_code = 409
    code = "concurrent_update"


class PaymentError(SwapOrderError):
    """The payment collaborator declined, failed or timed out."""
    status_code = 502
    code = "payment_error"
