"""
Deterministic document identifiers.

Every id is a pure function of immutable natural identifiers, so the same
provider record always maps to the same document and re-delivery becomes
an overwrite instead of a duplicate.
"""
import hashlib


def stable_id(*parts: object) -> str:
    raw = "\x1f".join(str(part) for part in parts)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def change_id(host: str, repository: str, number: int) -> str:
    return stable_id("change", host, repository, number)


def issue_id(host: str, project: str, key: str) -> str:
    return stable_id("issue", host, project, key)


def event_id(host: str, event_type: str, natural_key: str) -> str:
    return stable_id("event", host, event_type, natural_key)
