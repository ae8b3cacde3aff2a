"""Security validation for selected payment links."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import tldextract

from bill_extraction.config import ExtractionSettings
from bill_extraction.links import extract_domain, is_shortener
from bill_extraction.rules import DEFAULT_RULES, ExtractionRules
from bill_extraction.validation import normalize_vendor_key

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

# Bundled public suffix snapshot only; validation never goes to the network.
_suffix_extract = tldextract.TLDExtract(suffix_list_urls=(), cache_dir=None)


@dataclass
class LinkValidation:
    is_valid: bool
    url: str | None
    final_domain: str | None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    domain_source: str | None = None


def validate_payment_link(
    url: str | None,
    sender_domain: str,
    vendor_name: str | None,
    *,
    allowed_domains: Iterable[str] = (),
    rules: ExtractionRules = DEFAULT_RULES,
    settings: ExtractionSettings | None = None,
) -> LinkValidation:
    """Check a payment URL before it is shown to anyone.

    HTTPS (when required), no shorteners and a parsable URL are hard rules.
    The domain must then match the sender's domain, a vendor allow-list
    entry from ``allowed_domains`` or, as a last resort, the vendor name.
    """
    settings = settings or ExtractionSettings()
    if not url or not url.strip():
        return LinkValidation(False, None, None, errors=["No URL provided"])

    url = url.strip()
    domain = extract_domain(url)
    if not domain or "." not in domain:
        return LinkValidation(False, None, None, errors=["Invalid URL format"])

    errors: list[str] = []
    warnings: list[str] = []
    if settings.require_https_links and not url.lower().startswith("https://"):
        errors.append("URL must use HTTPS")
    if is_shortener(url, rules=rules):
        errors.append(f"URL shortener detected: {domain}")

    source = None
    sender_domain = sender_domain.strip().lower()
    if sender_domain and domains_match(domain, sender_domain):
        source = "sender domain"
    if source is None:
        for allowed in allowed_domains:
            if domains_match(domain, allowed.strip().lower()):
                source = f"vendor rule: {allowed}"
                break
    if source is None and _fuzzy_vendor_match(domain, vendor_name, rules):
        source = "fuzzy vendor match"
        warnings.append(f"Domain matched via fuzzy vendor name: {domain}")
        logger.warning("Payment link %s accepted by fuzzy vendor match", domain)
    if source is None:
        errors.append(
            f"Domain mismatch: {domain} does not match sender ({sender_domain or 'unknown'})"
            " or vendor rules"
        )

    is_valid = not errors
    return LinkValidation(
        is_valid=is_valid,
        url=url if is_valid else None,
        final_domain=domain,
        errors=errors,
        warnings=warnings,
        domain_source=source,
    )


def domains_match(url_domain: str, reference_domain: str) -> bool:
    """True for an exact, subdomain or same-registrable-domain match.

    The registrable domain comes from the public suffix list, so
    ``attacker.co.uk`` and ``mybank.co.uk`` do not match.
    """
    if not url_domain or not reference_domain:
        return False
    if url_domain == reference_domain:
        return True
    reference_base = base_domain(reference_domain)
    if reference_base is None:
        return False
    return base_domain(url_domain) == reference_base


def base_domain(domain: str) -> str | None:
    """``secure.chase.com`` -> ``chase.com``; ``a.mybank.co.uk`` -> ``mybank.co.uk``."""
    parts = _suffix_extract(domain)
    if not parts.domain or not parts.suffix:
        return None
    return f"{parts.domain}.{parts.suffix}"


def _fuzzy_vendor_match(
    domain: str, vendor_name: str | None, rules: ExtractionRules
) -> bool:
    if not vendor_name:
        return False
    domain_text = re.sub(r"[^a-z0-9]", "", _suffix_extract(domain).domain)
    needles = {re.sub(r"[^a-z0-9]", "", vendor_name.lower())}
    key = normalize_vendor_key(vendor_name, rules=rules)
    if key:
        needles.add(re.sub(r"[^a-z0-9]", "", key))
    return any(len(needle) >= 3 and needle in domain_text for needle in needles)
