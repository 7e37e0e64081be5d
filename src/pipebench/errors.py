class PipebenchError(Exception):
    """Base class for harness errors."""


class ConfigError(PipebenchError):
    pass


class InvalidPartitionError(PipebenchError):
    pass


class InputPathError(PipebenchError):
    pass


class SamplerInitError(PipebenchError):
    pass


class ChannelUnavailableError(PipebenchError):
    """The RPC channel did not become ready; fatal to one driver."""
