# syncqueue/serialization/base.py
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class BaseSerializer(ABC):
    @abstractmethod
    def serialize_payload(self, payload: Any) -> Optional[str]: ...

    @abstractmethod
    def deserialize_payload(self, data: Optional[str]) -> Any: ...

    @abstractmethod
    def serialize_state_data(self, data: Dict[str, Any]) -> str: ...

    @abstractmethod
    def deserialize_state_data(self, data_str: str) -> Dict[str, Any]: ...
