from __future__ import annotations


class SitemapCountError(Exception):
    """
    base for everything the counter raises on purpose
    - `reason` is the short label shown next to a failed sitemap in the report
    """

    @property
    def reason(self) -> str:
        return type(self).__name__


class ConfigError(SitemapCountError):
    pass


# fetch errors: anything between "we have a url" and "we have the bytes"
class FetchError(SitemapCountError):
    pass


class FetchTimeout(FetchError):
    @property
    def reason(self) -> str:
        return "Timeout"


class ClientError(FetchError):
    def __init__(self, status: int, url: str = ""):
        super().__init__(f"HTTP {status} for {url}" if url else f"HTTP {status}")
        self.status = status
        self.url = url

    @property
    def reason(self) -> str:
        return f"ClientError({self.status})"


class ServerError(FetchError):
    def __init__(self, status: int, url: str = ""):
        super().__init__(f"HTTP {status} for {url}" if url else f"HTTP {status}")
        self.status = status
        self.url = url

    @property
    def reason(self) -> str:
        return f"ServerError({self.status})"


class NetworkError(FetchError):
    def __init__(self, cause: BaseException | str):
        super().__init__(str(cause))
        self.cause = cause

    @property
    def reason(self) -> str:
        if isinstance(self.cause, BaseException):
            return f"Network({self.cause.__class__.__name__})"
        return "Network"


class TooLarge(FetchError):
    def __init__(self, limit: int, url: str = ""):
        super().__init__(f"response exceeds {limit} bytes" + (f": {url}" if url else ""))
        self.limit = limit


class InvalidUrl(FetchError):
    pass


class RedirectLoop(FetchError):
    @property
    def reason(self) -> str:
        return "TooManyRedirects"


class Cancelled(FetchError):
    pass


# parse errors: the bytes arrived but are not a sitemap we can count
class ParseError(SitemapCountError):
    pass


class Malformed(ParseError):
    pass


class UnknownRoot(ParseError):
    def __init__(self, tag: str):
        super().__init__(f"unsupported root element <{tag}>")
        self.tag = tag

    @property
    def reason(self) -> str:
        return f"UnknownRoot({self.tag})"


class DecompressError(ParseError):
    @property
    def reason(self) -> str:
        return "Decompress"


class TraversalError(SitemapCountError):
    pass


class DepthExceeded(TraversalError):
    def __init__(self, depth: int, max_depth: int):
        super().__init__(f"depth {depth} exceeds max_depth {max_depth}")
        self.depth = depth
        self.max_depth = max_depth


class RootFailure(TraversalError):
    """
    the root sitemap itself could not be fetched or parsed
    - this is the only error the engine lets escape
    """

    def __init__(self, url: str, cause: SitemapCountError):
        super().__init__(f"root sitemap {url} failed: {cause.reason}: {cause}")
        self.url = url
        self.cause = cause

    @property
    def reason(self) -> str:
        return f"RootFailure({self.cause.reason})"


class Unexpected(TraversalError):
    """a node job died with something that isn't ours (a bug, or a misbehaving fetcher)"""

    def __init__(self, cause: BaseException):
        super().__init__(f"{cause.__class__.__name__}: {cause}")
        self.cause = cause

    @property
    def reason(self) -> str:
        return f"Unexpected({self.cause.__class__.__name__})"
