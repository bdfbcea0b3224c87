"""Exceptions raised by the basket pricing engines."""


class BasketError(Exception):
    """Base class for every error raised by tranche_basket."""


class ValidationError(BasketError, ValueError):
    """Malformed input detected at construction or first use."""


class UnsupportedOperationError(BasketError, NotImplementedError):
    """The requested operation is not implemented by this engine or kernel."""


class StateError(BasketError, RuntimeError):
    """An operation was invoked out of order.

    Raised, for example, when a sensitivity scenario is selected before the
    grouped distribution surface has been computed.
    """
