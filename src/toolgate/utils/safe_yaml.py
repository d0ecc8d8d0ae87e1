"""YAML loading for gateway config files with duplicate key detection.

PyYAML's ``safe_load()`` keeps the last value when a mapping repeats a
key.  In a gateway config that means a second ``trusted_tools:`` or
``servers:`` block silently replaces the first one, which is easy to miss
in review.  The loader below raises instead.
"""

from __future__ import annotations

from typing import IO, Union

import yaml


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses mappings with repeated keys."""


def _construct_unique_mapping(loader, node):
    loader.flatten_mapping(node)
    pairs = loader.construct_pairs(node)
    seen: set = set()
    for key, _value in pairs:
        if key in seen:
            raise ValueError(
                f"Duplicate YAML key: {key!r} "
                f"(line {node.start_mark.line + 1})"
            )
        seen.add(key)
    return dict(pairs)


_UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_unique_mapping,
)


def safe_yaml_load(stream: Union[str, IO[str]]) -> object:
    """``yaml.safe_load()`` that raises ``ValueError`` on duplicate keys."""
    return yaml.load(stream, Loader=_UniqueKeyLoader)
