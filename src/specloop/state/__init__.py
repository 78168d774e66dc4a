from specloop.state.retry_store import RetryStateStore

__all__ = ["RetryStateStore"]
