from echo_runtime.utils.cancellation import CancellationToken

__all__ = ["CancellationToken"]
