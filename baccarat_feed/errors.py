from __future__ import annotations


class BaccaratFeedError(Exception):
    pass


class ConfigurationError(BaccaratFeedError):
    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        super().__init__("missing required config: " + ", ".join(self.missing))


class ProtocolParseError(BaccaratFeedError):
    def __init__(self, message: str, *, kind: str | None = None, sample: str | None = None):
        self.kind = kind
        self.sample = sample
        super().__init__(message)


class ScoreParseError(ProtocolParseError):
    pass


class TransportError(BaccaratFeedError):
    pass


class TransportClosed(BaccaratFeedError):
    def __init__(self, code: int | None, reason: str | None) -> None:
        self.code = code
        self.reason = reason
        super().__init__(f"connection closed code={code} reason={reason or 'N/A'}")


class PersistenceError(BaccaratFeedError):
    pass
