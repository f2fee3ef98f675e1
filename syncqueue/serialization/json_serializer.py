# syncqueue/serialization/json_serializer.py
import json
from typing import Any, Dict, Optional

from syncqueue.serialization.base import BaseSerializer


class JsonSerializer(BaseSerializer):
    def serialize_payload(self, payload: Any) -> Optional[str]:
        # None stays NULL in the store so "no result yet" is distinguishable
        if payload is None:
            return None
        return json.dumps(payload, default=str)

    def deserialize_payload(self, data: Optional[str]) -> Any:
        if data is None or data == "":
            return None
        return json.loads(data)

    def serialize_state_data(self, data: Dict[str, Any]) -> str:
        if not data:
            return "{}"
        return json.dumps(data, default=str)

    def deserialize_state_data(self, data_str: str) -> Dict[str, Any]:
        if not data_str:
            return {}
        try:
            return json.loads(data_str)
        except (TypeError, json.JSONDecodeError):
            return {}
