class LayoutError(Exception):
    """Base class for rejections raised by the layout engine."""


class CapacityExceededError(LayoutError):
    def __init__(self, unit_id, quantity, placed_count):
        super().__init__(
            f"Unit {unit_id} is fully placed ({placed_count} of {quantity})."
        )
        self.unit_id = unit_id
        self.quantity = quantity
        self.placed_count = placed_count

    def as_warning(self):
        return {
            "code": "CAPACITY_EXCEEDED",
            "message": str(self),
            "severity": "warning",
            "unit_id": self.unit_id,
            "quantity": self.quantity,
            "placed_count": self.placed_count,
        }


class InvalidPlacementError(LayoutError):
    pass


class StackIntegrityError(LayoutError):
    """Raised when derived stacks break the dense 1..N position run."""


class UnknownUnitError(LayoutError, KeyError):
    def __init__(self, unit_id):
        super().__init__(f"Unknown freight unit: {unit_id}")
        self.unit_id = unit_id

    def __str__(self):
        return self.args[0]


class PersistenceError(RuntimeError):
    """Raised for layout store transport or response issues."""


class LayoutValidationError(ValueError):
    def __init__(self, message, errors=None):
        super().__init__(message)
        self.errors = errors or {}
