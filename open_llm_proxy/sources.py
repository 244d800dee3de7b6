from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from urllib.parse import urlparse

logger = logging.getLogger("uvicorn.error")

_SCHEME_PREFIX = re.compile(r"^https?://")
_URL_SEPARATORS = re.compile(r"[./-]")


@dataclass(frozen=True, slots=True)
class ProviderSource:
    base_url: str
    api_key: str
    api_key_env: str

    @property
    def key(self) -> str:
        return self.base_url

    @property
    def hostname(self) -> str:
        return source_hostname(self.base_url)


class SourceRegistry:
    """Upstream providers keyed by base URL, in registration order.

    Read-only once built.
    """

    def __init__(self, sources: Iterable[ProviderSource] = ()) -> None:
        by_key: dict[str, ProviderSource] = {}
        for source in sources:
            by_key.setdefault(source.key, source)
        self._sources: Mapping[str, ProviderSource] = MappingProxyType(by_key)

    def lookup(self, source_key: str) -> ProviderSource | None:
        return self._sources.get(source_key)

    def keys(self) -> list[str]:
        return list(self._sources)

    def __iter__(self) -> Iterator[ProviderSource]:
        return iter(self._sources.values())

    def __len__(self) -> int:
        return len(self._sources)

    def __contains__(self, source_key: object) -> bool:
        return source_key in self._sources


def source_hostname(base_url: str) -> str:
    try:
        hostname = urlparse(base_url).hostname
    except ValueError:
        hostname = None
    return hostname or base_url


def derive_api_key_env_name(base_url: str) -> str:
    """Environment variable holding the credential for ``base_url``.

    ``https://api.example.com/v1`` maps to ``EXAMPLE``: the second-level
    domain label, upper-cased. When no hostname can be parsed the whole URL
    is sanitized instead (``example.com/v1`` -> ``EXAMPLE_COM_V1``).
    """
    try:
        hostname = urlparse(base_url).hostname
    except ValueError:
        hostname = None

    if hostname:
        parts = hostname.split(".")
        label = parts[-2] if len(parts) >= 2 else parts[0]
        return label.upper()

    logger.error("source_hostname_unparseable base_url=%s", base_url)
    stripped = _SCHEME_PREFIX.sub("", base_url)
    return _URL_SEPARATORS.sub("_", stripped.upper())


def build_source_registry(
    base_urls: Iterable[str],
    environ: Mapping[str, str] | None = None,
) -> SourceRegistry:
    env = os.environ if environ is None else environ
    sources: list[ProviderSource] = []
    seen: set[str] = set()
    for base_url in base_urls:
        if base_url in seen:
            logger.warning("source_duplicate_ignored base_url=%s", base_url)
            continue
        seen.add(base_url)

        env_name = derive_api_key_env_name(base_url)
        api_key = env.get(env_name) or ""
        if not api_key:
            logger.warning(
                "source_api_key_missing base_url=%s env=%s", base_url, env_name
            )
        sources.append(
            ProviderSource(base_url=base_url, api_key=api_key, api_key_env=env_name)
        )
        logger.info("source_configured base_url=%s env=%s", base_url, env_name)
    return SourceRegistry(sources)
