"""Validation for the dforever YAML configuration.

Brief:
  Global keys (directory, domain, ports, letsencrypt, ...) are checked against
  a JSON Schema stored next to this module in ``config-schema.json``. Site
  entries (dpacks, proxies, redirects) are checked in Python so that failures
  can carry a category (invalidUrl, invalidName, invalidDomain) that the web
  API turns into field-specific messages.

  Validation normalizes a few shapes in place, the way users tend to write
  them by hand:
    - a single mapping under dpacks/proxies/redirects becomes a list,
    - a single string under dpacks[].otherDomains becomes a list,
    - redirects[].to loses its trailing slash.
"""

from __future__ import annotations

import json
import logging
import re
import urllib.parse
from pathlib import Path
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator, ValidationError
from jsonschema.exceptions import SchemaError

from ..errors import (
    INVALID_DOMAIN,
    INVALID_NAME,
    INVALID_URL,
    ConfigValidationError,
)

logger = logging.getLogger(__name__)

DOCS_URL = "https://docs.dpack.io/forever"

SITE_COLLECTIONS = ("dpacks", "proxies", "redirects")

_CONTENT_KEY_RE = re.compile(r"(?:dweb://)?([0-9a-f]{64})/?", re.IGNORECASE)
_DOMAIN_LABEL_RE = re.compile(r"(?!-)[a-z0-9-]{1,63}(?<!-)", re.IGNORECASE)


def is_dweb_url(value: Any) -> bool:
    """Brief: True when value is a dweb:// URL or bare key with 64 hex chars.

    Example:
      >>> is_dweb_url("dweb://" + "ab" * 32 + "/")
      True
      >>> is_dweb_url("ab" * 31)
      False
    """

    return isinstance(value, str) and _CONTENT_KEY_RE.fullmatch(value) is not None


def match_content_key(value: Any) -> Optional[str]:
    """Return the raw hex key embedded in value, or None when it does not match."""

    if not isinstance(value, str):
        return None
    m = _CONTENT_KEY_RE.fullmatch(value)
    return m.group(1) if m else None


def is_domain(value: Any) -> bool:
    """Brief: Syntactic domain-name check.

    Inputs:
      - value: Candidate domain.

    Outputs:
      - bool: True for dot-separated labels of letters, digits and hyphens.
        Single-label names such as "localhost" are accepted.
    """

    if not isinstance(value, str) or not value or len(value) > 253:
        return False
    return all(_DOMAIN_LABEL_RE.fullmatch(label) for label in value.split("."))


def is_origin(value: Any) -> bool:
    """Brief: True for absolute http(s) URLs with a host part."""

    if not isinstance(value, str) or not value or any(c.isspace() for c in value):
        return False
    try:
        parts = urllib.parse.urlsplit(value)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.hostname)


def _check(
    assertion: bool,
    message: str,
    *,
    value: Any = None,
    category: Optional[str] = None,
    path: Optional[str] = None,
) -> None:
    if not assertion:
        raise ConfigValidationError(message, value=value, category=category, path=path)


def validate_mirror_entry(entry: Any, *, path: str = "dpacks.*") -> None:
    """Brief: Validate one dpacks[] entry, normalizing otherDomains in place.

    Inputs:
      - entry: Mapping with url, name and optional otherDomains.
      - path: Dotted location used in error messages.

    Outputs:
      - None.

    Raises:
      - ConfigValidationError: with category invalidUrl, invalidName or
        invalidDomain.
    """

    _check(
        isinstance(entry, dict),
        f"{path} must be an object, see {DOCS_URL}#dpacks",
        value=entry,
        path=path,
    )
    other = entry.get("otherDomains")
    if isinstance(other, str):
        entry["otherDomains"] = [other]

    _check(
        is_dweb_url(entry.get("url")),
        f"{path}.url must be a valid dpack url, see {DOCS_URL}#dpacksurl",
        value=entry.get("url"),
        category=INVALID_URL,
        path=f"{path}.url",
    )
    name = entry.get("name")
    _check(
        isinstance(name, str) and bool(name),
        f"{path}.name must be specified, see {DOCS_URL}#dpacksname",
        value=name,
        category=INVALID_NAME,
        path=f"{path}.name",
    )
    other = entry.get("otherDomains")
    if other:
        _check(
            isinstance(other, list),
            f"{path}.otherDomains must be a list of domain names, see {DOCS_URL}#dpacksotherdomains",
            value=other,
            category=INVALID_DOMAIN,
            path=f"{path}.otherDomains",
        )
        for domain in other:
            _check(
                is_domain(domain),
                f"{path}.otherDomains.* must be domain names, see {DOCS_URL}#dpacksotherdomains",
                value=domain,
                category=INVALID_DOMAIN,
                path=f"{path}.otherDomains",
            )


def validate_proxy_entry(entry: Any, *, path: str = "proxies.*") -> None:
    """Validate one proxies[] entry (from: domain, to: origin URL)."""

    _check(isinstance(entry, dict), f"{path} must be an object", value=entry, path=path)
    _check(
        is_domain(entry.get("from")),
        f"{path}.from must be a domain name, see {DOCS_URL}#proxiesfrom",
        value=entry.get("from"),
        category=INVALID_DOMAIN,
        path=f"{path}.from",
    )
    _check(
        is_origin(entry.get("to")),
        f"{path}.to must be a target origin, see {DOCS_URL}#proxiesto",
        value=entry.get("to"),
        category=INVALID_URL,
        path=f"{path}.to",
    )


def validate_redirect_entry(entry: Any, *, path: str = "redirects.*") -> None:
    """Validate one redirects[] entry and strip the trailing slash of `to`."""

    _check(isinstance(entry, dict), f"{path} must be an object", value=entry, path=path)
    _check(
        is_domain(entry.get("from")),
        f"{path}.from must be a domain name, see {DOCS_URL}#redirectsfrom",
        value=entry.get("from"),
        category=INVALID_DOMAIN,
        path=f"{path}.from",
    )
    _check(
        is_origin(entry.get("to")),
        f"{path}.to must be a target origin, see {DOCS_URL}#redirectsto",
        value=entry.get("to"),
        category=INVALID_URL,
        path=f"{path}.to",
    )
    if entry["to"].endswith("/"):
        entry["to"] = entry["to"][:-1]


_ENTRY_VALIDATORS = {
    "dpacks": validate_mirror_entry,
    "proxies": validate_proxy_entry,
    "redirects": validate_redirect_entry,
}


def _normalize_site_collections(cfg: Dict[str, Any]) -> None:
    """Wrap a single mapping under dpacks/proxies/redirects into a list (in place)."""

    for key in SITE_COLLECTIONS:
        value = cfg.get(key)
        if isinstance(value, dict):
            cfg[key] = [value]


def get_default_schema_path() -> Path:
    """Return the path of the bundled ``config-schema.json``."""

    return Path(__file__).resolve().with_name("config-schema.json")


def _load_schema(schema_path: Optional[Path] = None) -> Dict[str, Any]:
    path = schema_path or get_default_schema_path()
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _dotted(err: ValidationError) -> str:
    return ".".join(str(p) for p in err.absolute_path) or "<root>"


def _format_errors(errors: List[ValidationError], *, config_path: Optional[str]) -> str:
    """Brief: Format jsonschema errors into one human-readable message.

    Inputs:
      - errors: jsonschema.ValidationError instances.
      - config_path: Optional YAML path, used only in the header line.

    Outputs:
      - str: header followed by one "- <path>: <message>" line per error.
    """

    lines: List[str] = [f"Invalid configuration in {config_path or '<config dict>'}:"]
    for err in errors:
        lines.append(f"- {_dotted(err)}: {err.message}")
    return "\n".join(lines)


def validate_config(
    cfg: Dict[str, Any],
    *,
    schema_path: Optional[Path] = None,
    config_path: Optional[str] = None,
) -> None:
    """Brief: Validate (and lightly normalize) a parsed configuration mapping.

    Inputs:
      - cfg: Mapping loaded from YAML; normalized in place.
      - schema_path: Optional explicit JSON Schema path.
      - config_path: Optional path of the YAML file, used in messages only.

    Outputs:
      - None on success.

    Raises:
      - ConfigValidationError: first failing rule. For schema failures the
        message lists every schema error; value and path describe the first.

    Notes:
      - Keys the schema does not describe are accepted and left untouched.
      - When the schema file cannot be loaded, a warning is logged and only
        the site-entry checks run.

    Example:
      >>> cfg = {"redirects": {"from": "a.com", "to": "https://b.com/"}}
      >>> validate_config(cfg)
      >>> cfg["redirects"]
      [{'from': 'a.com', 'to': 'https://b.com'}]
    """

    _normalize_site_collections(cfg)

    effective_schema_path = schema_path or get_default_schema_path()
    try:
        schema = _load_schema(effective_schema_path)
        Draft202012Validator.check_schema(schema)
    except (OSError, json.JSONDecodeError, SchemaError) as exc:
        logger.warning(
            "Failed to load configuration schema at %s: %s; skipping schema validation",
            effective_schema_path,
            exc,
        )
        schema = None

    if schema is not None:
        validator = Draft202012Validator(schema)
        errors = sorted(validator.iter_errors(cfg), key=lambda e: [str(p) for p in e.absolute_path])
        if errors:
            first = errors[0]
            raise ConfigValidationError(
                _format_errors(errors, config_path=config_path),
                value=first.instance,
                path=_dotted(first),
            )

    for key in SITE_COLLECTIONS:
        entries = cfg.get(key)
        if not entries:
            continue
        check_entry = _ENTRY_VALIDATORS[key]
        for idx, entry in enumerate(entries):
            check_entry(entry, path=f"{key}.{idx}")
