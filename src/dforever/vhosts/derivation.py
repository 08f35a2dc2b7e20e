"""Pure derivation of runtime vhost definitions from canonical site entries.

Brief:
  Every function here is side-effect free: it reads a canonical entry plus the
  GlobalSettings and returns a frozen value object. The registry compares
  generations of these objects by id and by value, so nothing in this module
  may hold references back into the mutable canonical document.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from ..config.config_schema import is_dweb_url, match_content_key
from ..config.settings import GlobalSettings
from ..errors import InvalidContentKey

logger = logging.getLogger(__name__)

DWEB_SCHEME = "dweb://"


def get_content_key(url: Any) -> str:
    """Brief: Extract the 64-hex-character content key from a dweb URL or bare key.

    Inputs:
      - url: "dweb://<key>/", "dweb://<key>" or "<key>" (case-insensitive).

    Outputs:
      - str: the key, lowercased.

    Raises:
      - InvalidContentKey: for any other shape.

    Example:
      >>> get_content_key("dweb://" + "AB" * 32 + "/") == "ab" * 32
      True
    """

    key = match_content_key(url) if isinstance(url, str) else None
    if key is None:
        raise InvalidContentKey(f"not a dweb url or content key: {url!r}")
    return key.lower()


def dweb_url_for_key(key: str) -> str:
    return f"{DWEB_SCHEME}{key}/"


@dataclasses.dataclass(frozen=True)
class MirrorVhost:
    """A vhost serving one dPack archive."""

    id: str
    url: str
    name: str
    content_key: str
    other_domains: Tuple[str, ...]
    hostnames: Tuple[str, ...]
    storage_directory: str
    http_mirror: bool
    additional_urls: Tuple[str, ...]
    vhost_type: str = dataclasses.field(default="mirror", init=False)


@dataclasses.dataclass(frozen=True)
class ProxyVhost:
    """A vhost forwarding requests for one domain to a target origin."""

    id: str
    source: str
    target: str
    hostnames: Tuple[str, ...]
    vhost_type: str = dataclasses.field(default="proxy", init=False)


@dataclasses.dataclass(frozen=True)
class RedirectVhost:
    """A vhost redirecting every request for one domain to a target URL."""

    id: str
    source: str
    target: str
    hostnames: Tuple[str, ...]
    vhost_type: str = dataclasses.field(default="redirect", init=False)


DerivedVhost = Union[MirrorVhost, ProxyVhost, RedirectVhost]


def mirror_hostnames(name: str, domain: Optional[str], other_domains: Iterable[str]) -> Tuple[str, ...]:
    """Primary hostname is "<name>.<domain>", followed by otherDomains in order."""

    return (f"{name}.{domain}",) + tuple(other_domains)


def additional_urls(hostnames: Iterable[str], http_mirror: bool) -> Tuple[str, ...]:
    """Brief: URLs advertised to pinning clients for one mirror.

    Inputs:
      - hostnames: Mirror hostnames, primary first.
      - http_mirror: Whether content is also served over HTTPS.

    Outputs:
      - tuple[str, ...]: "dweb://<host>" per hostname, each followed by
        "https://<host>" when http_mirror is set.
    """

    urls: List[str] = []
    for hostname in hostnames:
        urls.append(DWEB_SCHEME + hostname)
        if http_mirror:
            urls.append("https://" + hostname)
    return tuple(urls)


def derive_mirror(entry: Mapping[str, Any], settings: GlobalSettings) -> MirrorVhost:
    key = get_content_key(entry.get("url"))
    other = tuple(entry.get("otherDomains") or ())
    hostnames = mirror_hostnames(entry["name"], settings.domain, other)
    return MirrorVhost(
        id="mirror-" + key,
        url=entry["url"],
        name=entry["name"],
        content_key=key,
        other_domains=other,
        hostnames=hostnames,
        storage_directory=os.path.join(settings.directory, key),
        http_mirror=settings.http_mirror,
        additional_urls=additional_urls(hostnames, settings.http_mirror),
    )


def derive_proxy(entry: Mapping[str, Any], settings: GlobalSettings) -> ProxyVhost:
    return ProxyVhost(
        id="proxy-" + entry["from"],
        source=entry["from"],
        target=entry["to"],
        hostnames=(entry["from"],),
    )


def derive_redirect(entry: Mapping[str, Any], settings: GlobalSettings) -> RedirectVhost:
    return RedirectVhost(
        id="redirect-" + entry["from"],
        source=entry["from"],
        target=entry["to"],
        hostnames=(entry["from"],),
    )


def _entries(canonical: Mapping[str, Any], key: str) -> List[Dict[str, Any]]:
    return list(canonical.get(key) or [])


def derive_mirrors(canonical: Mapping[str, Any], settings: GlobalSettings) -> List[MirrorVhost]:
    return [derive_mirror(e, settings) for e in _entries(canonical, "dpacks")]


def derive_vhosts(canonical: Mapping[str, Any], settings: GlobalSettings) -> List[DerivedVhost]:
    """Brief: Derive every vhost in declaration order (mirrors, proxies, redirects).

    Inputs:
      - canonical: Validated canonical mapping.
      - settings: GlobalSettings built from the same mapping.

    Outputs:
      - list of MirrorVhost / ProxyVhost / RedirectVhost.

    Notes:
      - When two entries derive the same id, the first wins and the later one
        is dropped with a warning.
    """

    derived: List[DerivedVhost] = []
    derived.extend(derive_mirrors(canonical, settings))
    derived.extend(derive_proxy(e, settings) for e in _entries(canonical, "proxies"))
    derived.extend(derive_redirect(e, settings) for e in _entries(canonical, "redirects"))

    seen: set[str] = set()
    unique: List[DerivedVhost] = []
    for vhost in derived:
        if vhost.id in seen:
            logger.warning("Ignoring duplicate site %s", vhost.id)
            continue
        seen.add(vhost.id)
        unique.append(vhost)
    return unique


def all_hostnames(settings: GlobalSettings, vhosts: Iterable[DerivedVhost]) -> List[Optional[str]]:
    """Brief: Global domain followed by every vhost hostname, in order.

    Notes:
      - Duplicates are kept on purpose: consumers rely on position and
        multiplicity (e.g. certificate requests list every name).
    """

    names: List[Optional[str]] = [settings.domain]
    for vhost in vhosts:
        names.extend(vhost.hostnames)
    return names


__all__ = [
    "DerivedVhost",
    "MirrorVhost",
    "ProxyVhost",
    "RedirectVhost",
    "additional_urls",
    "all_hostnames",
    "derive_mirror",
    "derive_mirrors",
    "derive_proxy",
    "derive_redirect",
    "derive_vhosts",
    "dweb_url_for_key",
    "get_content_key",
    "is_dweb_url",
    "mirror_hostnames",
]
