from typing import Dict, Iterable, List, Optional, Tuple


def unpack_tags(tags: str | None) -> Tuple[Tuple[str, str], ...]:
    tags_unpacked: list[Tuple[str, str]] = []
    if tags:
        try:
            tags_list = tags.split(";")
            for tag in tags_list:
                key, value = tag.split("=")
                tags_unpacked.append((key, value))
        except ValueError:
            raise ValueError(
                "Tags must be in the format 'key1=value1;key2=value2', "
                f"but instead got {tags}"
            )
    return tuple(tags_unpacked)


def unpack_parameters(pairs: Optional[Iterable[str]]) -> Dict[str, str]:
    """Turn repeated ``KEY=VALUE`` arguments into a parameter mapping.

    Only the first ``=`` separates key from value, so values may contain ``=``.
    """
    values: Dict[str, str] = {}
    for pair in pairs or ():
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(
                f"Parameters must be in the format 'Key=Value', but instead got {pair}"
            )
        values[key] = value
    return values


def convert_tags_for_aws_interface(
    tags_unpacked: Tuple[Tuple[str, str], ...],
) -> List[Dict[str, str]]:
    return [{"Key": k, "Value": v} for k, v in tags_unpacked]


def convert_parameters_for_aws_interface(
    values: Dict[str, str],
) -> List[Dict[str, str]]:
    return [{"ParameterKey": k, "ParameterValue": v} for k, v in values.items()]
