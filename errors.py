class BenchmarkError(Exception):
    """Base class for failures that end a benchmark run with a non-zero exit."""


class ConfigurationError(BenchmarkError):
    """Bad arguments, unknown operation, missing/empty input, no device."""


class LoadError(BenchmarkError):
    """An input image could not be decoded."""

    def __init__(self, path, reason):
        super().__init__(f"Failed to load {path}: {reason}")
        self.path = path
        self.reason = reason


class EncodeError(BenchmarkError):
    """A filtered image could not be written."""

    def __init__(self, path, reason):
        super().__init__(f"Failed to save {path}: {reason}")
        self.path = path
        self.reason = reason


class CommunicationError(BenchmarkError):
    """A collective or point-to-point exchange failed between ranks."""
