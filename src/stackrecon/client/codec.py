"""Tag and parameter encoding at the CloudFormation API boundary.

CloudFormation takes tags as ``[{"Key": ..., "Value": ...}]`` and parameters
as ``[{"ParameterKey": ..., "ParameterValue": ...}]``. Records are emitted
sorted by key so the same mapping always encodes to the same list. An empty
or missing mapping encodes to an empty list, never ``None``.
"""

from typing import Dict, Iterable, List, Mapping, Optional


def encode_tags(tags: Optional[Mapping[str, str]]) -> List[Dict[str, str]]:
    return [{"Key": key, "Value": tags[key]} for key in sorted(tags or {})]


def decode_tags(records: Optional[Iterable[Mapping[str, str]]]) -> Dict[str, str]:
    return {record["Key"]: record.get("Value", "") for record in records or []}


def encode_parameters(parameters: Optional[Mapping[str, str]]) -> List[Dict[str, str]]:
    return [
        {"ParameterKey": key, "ParameterValue": parameters[key]}
        for key in sorted(parameters or {})
    ]


def decode_parameters(records: Optional[Iterable[Mapping[str, str]]]) -> Dict[str, str]:
    # ParameterValue holds what was declared; ResolvedValue is ignored
    return {
        record["ParameterKey"]: record.get("ParameterValue", "")
        for record in records or []
    }
