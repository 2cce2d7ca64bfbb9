"""Maps an endpoint label to its priority tier and retry budget.

Matching is by substring: a configured key matches when it occurs anywhere
in the endpoint label. When several keys match, the longest one wins, and
among equally long keys the one configured first wins. The 'default' key
is never matched and is returned only when nothing else matches.
"""

import logging
from typing import Any, Dict, Mapping, Optional, Union

from apithrottle.domain.models.common import (
    DEFAULT_ENDPOINT_CONFIGS,
    DEFAULT_ENDPOINT_KEY,
    EndpointConfig,
)

logger = logging.getLogger(__name__)

ConfigEntry = Union[EndpointConfig, Mapping[str, Any]]


def coerce_endpoint_config(key: str, entry: ConfigEntry) -> EndpointConfig:
    """Builds an EndpointConfig from an instance or a plain mapping.

    Mappings may spell the retry budget 'max_retries' or 'maxRetries'
    (the latter is what JSON/YAML exported from a browser client carries).

    Raises:
        ValueError: If priority or retry budget are missing or invalid.
    """
    if isinstance(entry, EndpointConfig):
        priority, max_retries = entry.priority, entry.max_retries
    elif isinstance(entry, Mapping):
        priority = entry.get('priority')
        max_retries = entry.get('max_retries', entry.get('maxRetries'))
    else:
        raise ValueError(f"Endpoint config for '{key}' must be a mapping, got {type(entry).__name__}")

    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValueError(f"Endpoint config for '{key}' needs an integer priority, got {priority!r}")
    if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
        raise ValueError(f"Endpoint config for '{key}' needs a non-negative integer max_retries, got {max_retries!r}")
    return EndpointConfig(priority=priority, max_retries=max_retries)


class EndpointClassifier:
    """Immutable lookup table from endpoint substrings to tiers."""

    def __init__(self, configs: Optional[Mapping[str, ConfigEntry]] = None):
        source = DEFAULT_ENDPOINT_CONFIGS if configs is None else configs
        table: Dict[str, EndpointConfig] = {
            key: coerce_endpoint_config(key, entry) for key, entry in source.items()
        }
        if DEFAULT_ENDPOINT_KEY not in table:
            raise ValueError(f"Endpoint configs must contain a '{DEFAULT_ENDPOINT_KEY}' entry")
        self._configs = table

    @property
    def configs(self) -> Dict[str, EndpointConfig]:
        """A copy of the lookup table, in configuration order."""
        return dict(self._configs)

    @property
    def default(self) -> EndpointConfig:
        return self._configs[DEFAULT_ENDPOINT_KEY]

    def match(self, endpoint: str) -> Optional[str]:
        """Returns the configured key that classifies `endpoint`, or None."""
        best: Optional[str] = None
        for key in self._configs:
            if key == DEFAULT_ENDPOINT_KEY or key not in endpoint:
                continue
            if best is None or len(key) > len(best):
                best = key
        return best

    def classify(self, endpoint: str) -> EndpointConfig:
        """Returns the tier for `endpoint`, falling back to the default entry."""
        key = self.match(endpoint)
        if key is None:
            return self.default
        return self._configs[key]

    def merged(self, overrides: Mapping[str, ConfigEntry]) -> "EndpointClassifier":
        """Returns a new classifier with `overrides` laid over the current table.

        Keys not named in `overrides` keep their current tiers.
        """
        combined: Dict[str, ConfigEntry] = dict(self._configs)
        combined.update(overrides)
        logger.debug(f"Merging endpoint configs: {sorted(overrides)}")
        return EndpointClassifier(combined)

    def __repr__(self) -> str:
        return f"EndpointClassifier({len(self._configs)} tiers)"
