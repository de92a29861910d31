# errors.py
# Programmer errors raised by the containers. Solver outcomes are reported
# through State values, not exceptions.


class OutOfBoundsError(IndexError):
    """Index at or beyond the logical length of a vector or selector."""

    def __init__(self, index: int, length: int):
        super().__init__(f"index {index} out of bounds for length {length}")
        self.index = index
        self.length = length


class UnsupportedOperationError(NotImplementedError):
    """Mid-sequence mutation (insert/delete) on an append-only container."""

    def __init__(self, operation: str, container: str = "SegmentedVector"):
        super().__init__(f"{container} does not support '{operation}'")
        self.operation = operation
