"""Fold raw device property records into a lookup mapping."""

from __future__ import annotations

from typing import Iterable

from testdroid_proxy.models import DeviceProperty


def property_key(group_name: str) -> str:
    """'Build version' -> 'build_version'."""
    return group_name.lower().replace(" ", "_")


def normalize_properties(records: Iterable[DeviceProperty]) -> dict[str, str | list[str]]:
    """Group property values by their normalized group name.

    A group seen once maps to its value; a group seen more than once maps to
    the list of its values in the order they were reported.
    """
    result: dict[str, str | list[str]] = {}
    for record in records:
        key = property_key(record.group_name)
        if key not in result:
            result[key] = record.display_value
            continue
        existing = result[key]
        if isinstance(existing, list):
            existing.append(record.display_value)
        else:
            result[key] = [existing, record.display_value]
    return result
