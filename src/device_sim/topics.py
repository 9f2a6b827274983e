"""Topic names used with the Device Provisioning Service and IoT Hub.

Templates follow the documented MQTT topic grammar:
https://learn.microsoft.com/azure/iot-dps/iot-dps-mqtt-support
https://learn.microsoft.com/azure/iot/iot-mqtt-connect-to-iot-hub
"""

import re
import uuid
from typing import Optional

from device_sim.property_bag import PropertyBag, decode_property_bag, with_property_bag

DPS_API_VERSION = "2019-03-31"
HUB_API_VERSION = "2020-09-30"
MQTT_PORT = 8883

# Device Provisioning Service
REGISTRATION_RESPONSES = "$dps/registrations/res/#"

# IoT Hub twin
TWIN_RESPONSES = "$iothub/twin/res/#"
DESIRED_UPDATE = "$iothub/twin/PATCH/properties/desired/#"

_DESIRED_UPDATE_RE = re.compile(r"^\$iothub/twin/PATCH/properties/desired/\?\$version=[0-9]+$")
_REPORTED_UPDATE_ACCEPTED_RE = re.compile(r"^\$iothub/twin/res/204/\?\$rid=[^&]+&\$version=[0-9]+$")


def new_request_id() -> str:
    """Create a fresh correlation id for an outbound request."""
    return str(uuid.uuid4())


def register(request_id: str) -> str:
    return with_property_bag("$dps/registrations/PUT/iotdps-register/", {"$rid": request_id})


def registration_status(request_id: str, operation_id: str) -> str:
    return with_property_bag(
        "$dps/registrations/GET/iotdps-get-operationstatus/",
        {"$rid": request_id, "operationId": operation_id},
    )


def registration_result(status: int) -> str:
    """Prefix of a registration response topic carrying the given status code."""
    return f"$dps/registrations/res/{status}/"


def get_twin_properties(request_id: str) -> str:
    return with_property_bag("$iothub/twin/GET/", {"$rid": request_id})


def twin_response(status: int) -> str:
    """Prefix of a twin response topic carrying the given status code."""
    return f"$iothub/twin/res/{status}/"


def update_twin_reported(request_id: str) -> str:
    return with_property_bag("$iothub/twin/PATCH/properties/reported/", {"$rid": request_id})


def messages(device_id: str, properties: Optional[PropertyBag] = None) -> str:
    return with_property_bag(f"devices/{device_id}/messages/events/", properties)


def batch(device_id: str) -> str:
    return messages(device_id, {"batch": None})


def pgps(device_id: str) -> str:
    return f"{device_id}/pgps"


def agps(device_id: str) -> str:
    return f"{device_id}/agps"


def is_desired_update(topic: str) -> bool:
    return _DESIRED_UPDATE_RE.match(topic) is not None


def is_reported_update_accepted(topic: str) -> bool:
    return _REPORTED_UPDATE_ACCEPTED_RE.match(topic) is not None


def topic_properties(topic: str) -> PropertyBag:
    """Decode the property bag following the ``?`` of a topic, empty if there is none."""
    if "?" not in topic:
        return {}
    return decode_property_bag(topic.split("?", 1)[1])


def parse_request_id_from_topic(topic: str) -> Optional[str]:
    """Extract the request id ($rid) from a response topic.

    Args:
        topic: Topic such as ``$iothub/twin/res/200/?$rid=abc&$version=1``

    Returns:
        The request id, or None if the topic carries no (or an empty) $rid.
    """
    request_id = topic_properties(topic).get("$rid")
    return request_id or None


def parse_status_from_topic(topic: str) -> Optional[int]:
    """Extract the status code segment from a ``.../res/{status}/...`` topic."""
    parts = topic.split("/")
    if len(parts) < 4 or parts[2] != "res":
        return None
    try:
        return int(parts[3])
    except ValueError:
        return None
