"""Moderator-facing reputation summary text."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from .aggregator import ReputationFlags, ReputationQuery

SEPARATOR = " · "


def _text(value) -> Optional[str]:
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def _dict(value) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def signal_reasons(query: ReputationQuery, flags: ReputationFlags) -> List[str]:
    reasons = []
    if flags.is_vpn:
        reasons.append("VPN")
    if flags.is_proxy:
        reasons.append("Proxy")
    if flags.is_tor:
        reasons.append("Tor")
    if flags.is_datacenter:
        reasons.append("Datacenter/hosting")
    if flags.is_abuser:
        reasons.append("Abuse risk")
    sfs = query.stop_forum_spam_result or {}
    if sfs.get("appears"):
        confidence = sfs.get("confidence")
        if confidence is not None:
            reasons.append(f"StopForumSpam ({round(confidence)}% confidence)")
        else:
            reasons.append("StopForumSpam report")
    return reasons


def format_location(ipapi: Dict[str, Any], geo: Dict[str, Any]) -> Optional[str]:
    """"city, region, country" with empty and repeated levels dropped."""
    loc = _dict(ipapi.get("location"))
    parts: List[str] = []
    for key in ("city", "region", "country"):
        value = _text(loc.get(key)) or _text(geo.get(key))
        if value and value not in parts:
            parts.append(value)
    return ", ".join(parts) or None


def detail_parts(query: ReputationQuery) -> List[str]:
    ipapi = query.ipapi_result or {}
    geo = query.geo_result or {}
    sfs = query.stop_forum_spam_result or {}
    connection = _dict(geo.get("connection"))
    details: List[str] = []

    provider = (
        _text(_dict(ipapi.get("company")).get("name"))
        or _text(_dict(ipapi.get("datacenter")).get("datacenter"))
        or _text(connection.get("isp"))
        or _text(connection.get("org"))
    )
    if provider:
        details.append(f"Provider: {provider}")

    conn_type = _text(ipapi.get("connection_type")) or _text(ipapi.get("type"))
    if conn_type:
        details.append(f"Connection type: {conn_type}")

    location = format_location(ipapi, geo)
    if location:
        details.append(f"Estimated location: {location}")

    tz = (
        _text(_dict(ipapi.get("location")).get("time_zone"))
        or _text(_dict(ipapi.get("timezone")).get("id"))
        or _text(geo.get("timezone"))
    )
    if tz:
        details.append(f"Timezone: {tz}")

    raw_asn = ipapi.get("asn")
    asn_number = (
        _text(_dict(raw_asn).get("asn"))
        or (_text(raw_asn) if isinstance(raw_asn, str) else None)
        or _text(connection.get("asn"))
    )
    asn_name = _text(_dict(raw_asn).get("name"))
    if asn_number or asn_name:
        details.append("ASN: " + " - ".join(p for p in (asn_number, asn_name) if p))

    if sfs.get("appears"):
        frequency = sfs.get("frequency")
        text = f"{frequency:g} reports" if frequency is not None else "Reports"
        if sfs.get("confidence") is not None:
            text += f" (confidence {round(sfs['confidence'])}%)"
        if sfs.get("last_seen_at"):
            text += f"{SEPARATOR}Last report: {sfs['last_seen_at']}"
        details.append(f"StopForumSpam: {text}")
    return details


def build_summary(query: ReputationQuery, flags: ReputationFlags) -> str:
    if not query.has_data:
        if query.errors:
            return f"Reputation data could not be retrieved ({' | '.join(query.errors)})."
        return "No reputation data available."

    reasons = signal_reasons(query, flags)
    if reasons:
        text = f"Signals detected: {', '.join(reasons)}."
    else:
        text = "No known VPN/Proxy signal for this IP."

    details = detail_parts(query)
    if details:
        text = f"{text} {SEPARATOR.join(details)}."
    if query.errors:
        text = f"{text} Incomplete sources: {' | '.join(query.errors)}."
    return text


def failed_check_summary(message: str) -> str:
    return f"Automatic check failed ({message})."
