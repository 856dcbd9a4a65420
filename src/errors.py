"""Exception types shared across the scan pipeline."""


class NavigationError(Exception):
    """The product page could not be loaded into a usable state."""

    def __init__(self, url: str, reason: str, password_protected: bool = False):
        self.url = url
        self.reason = reason
        self.password_protected = password_protected
        super().__init__(f"Failed to load {url}: {reason}")


class ScanTimeoutError(Exception):
    """Whole-scan deadline exceeded."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        super().__init__(f"Scan timed out after {seconds:g}s")


class BrowserConfigurationError(Exception):
    """Browser backend is misconfigured for the current environment."""


class StorageError(Exception):
    """Screenshot storage failed or a key was rejected."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Storage error for {key!r}: {reason}")


class AiUnavailableError(Exception):
    """AI confirmation backend is not configured or disabled."""


class PageLockError(Exception):
    """Could not take the per-page lock in time."""

    def __init__(self, page_id: int, waited_seconds: float):
        self.page_id = page_id
        self.waited_seconds = waited_seconds
        super().__init__(f"Timed out after {waited_seconds:.1f}s waiting for lock on page {page_id}")
