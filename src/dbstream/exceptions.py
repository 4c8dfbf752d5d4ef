"""
Streaming pipeline exception classes.
"""


class StreamError(Exception):
    """Base class for all dbstream errors.
    """


class ValidationError(StreamError):
    """Error in input validation.
    """


class BindingError(StreamError):
    """Error binding a target shape to the columns of a cursor.
    """


class MissingColumnsError(BindingError):
    """Requested columns are not present in the active result set.

    Every unmatched name is reported at once.
    """

    def __init__(self, missing) -> None:
        self.missing = tuple(sorted(missing))
        super().__init__(f'Invalid columns: {", ".join(self.missing)}')


class MaterializationError(StreamError):
    """Error converting or assigning a row value to a field.
    """

    def __init__(self, field: str, message: str | None = None) -> None:
        self.field = field
        super().__init__(message or f"Unable to set value of field '{field}'.")


class PipelineCancelled(StreamError):
    """The pipeline was cancelled before the cursor was exhausted.
    """


class PoolError(StreamError):
    """Buffer pool misuse, such as releasing a buffer twice.
    """


class SinkClosedError(StreamError):
    """Write or completion attempted on a sink that was already signalled.
    """


