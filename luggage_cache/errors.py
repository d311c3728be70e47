"""Exception taxonomy shared by the cache, the coordinator and the LLM client."""


class CacheError(Exception):
    """Base class for cache-layer failures. Never surfaced to UI callers."""


class CacheMiss(CacheError):
    """Control-flow signal: no live entry exists for the requested key."""

    def __init__(self, key: str):
        super().__init__(f"No live cache entry for key {key!r}.")
        self.key = key


class CacheEntryTooLarge(CacheError):
    """A single entry is larger than the whole cache budget."""

    def __init__(self, key: str, size_bytes: int, max_size_bytes: int):
        super().__init__(
            f"Entry {key!r} is {size_bytes} bytes, which exceeds the cache budget of {max_size_bytes} bytes."
        )
        self.key = key
        self.size_bytes = size_bytes
        self.max_size_bytes = max_size_bytes


class CacheStoreIOError(CacheError):
    """The persistence backend failed (disk full, corruption, locked database...)."""


class ComputeFailure(Exception):
    """Base class for failures of the external capability behind a compute function."""


class LLMRequestError(ComputeFailure):
    """The LLM provider did not return a usable response after all retries."""


class LLMConfigurationError(ComputeFailure):
    """The LLM client is missing credentials or names an unknown provider."""


class RequestTimeout(TimeoutError):
    """A caller stopped waiting for a shared computation after its own timeout."""

    def __init__(self, key: str, timeout: float):
        super().__init__(f"Timed out after {timeout:.2f}s waiting for {key!r}.")
        self.key = key
        self.timeout = timeout


class RequestCancelled(Exception):
    """A caller cancelled its own wait on a shared computation."""

    def __init__(self, key: str):
        super().__init__(f"Wait for {key!r} was cancelled by the caller.")
        self.key = key
