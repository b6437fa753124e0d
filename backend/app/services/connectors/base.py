from abc import ABC, abstractmethod
from typing import Any


class ConnectorResult(dict):
    """
    Light wrapper around a provider response.

    Always carries ``success``; successful results carry ``data`` and failed
    ones carry ``error``.
    """

    @classmethod
    def ok(cls, data: Any) -> "ConnectorResult":
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, error: str) -> "ConnectorResult":
        return cls(success=False, error=error)

    @property
    def success(self) -> bool:
        return bool(self.get("success"))

    @property
    def data(self) -> Any:
        return self.get("data")

    @property
    def error(self) -> str | None:
        return self.get("error")


class BaseConnector(ABC):
    name: str

    @abstractmethod
    async def fetch(self, **kwargs) -> ConnectorResult:
        ...
