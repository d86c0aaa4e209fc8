"""MQTT topic builders."""

from __future__ import annotations

DEVICE_PLACEHOLDER = "{device_id}"


def request_topic(template: str, device_id: str) -> str:
    """Topic a data-push request for ``device_id`` is published on."""
    return template.replace(DEVICE_PLACEHOLDER, device_id)


def report_topic(template: str, device_id: str) -> str:
    """Topic the inverter reports ``device_id`` samples on."""
    return template.replace(DEVICE_PLACEHOLDER, device_id)


def report_filter(template: str) -> str:
    """Wildcard filter matching the report topic of every device."""
    return template.replace(DEVICE_PLACEHOLDER, "+")


def device_from_topic(template: str, topic: str) -> str | None:
    """Extract the device id from a concrete report topic, or None."""
    prefix, sep, suffix = template.partition(DEVICE_PLACEHOLDER)
    if not sep:
        return None
    if not topic.startswith(prefix) or not topic.endswith(suffix):
        return None
    device_id = topic[len(prefix):len(topic) - len(suffix)]
    if not device_id or "/" in device_id:
        return None
    return device_id
