from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import orjson

from .codec import ACTIVE_TABLE, COMPLETED_TABLE, TableDocument, TableSchema, new_document, parse_document
from .config import Settings
from .errors import ParseError
from .store import Snapshot

SEAL_SCHEMA_VERSION = "v1"


@dataclass
class DomainState:
    domain: str
    backlog: TableDocument
    archive: TableDocument
    seal: Optional[Dict[str, Any]]


def read_prefixes(settings: Settings) -> List[str]:
    return [settings.layout.tasks_dir, f"{settings.layout.state_dir}/snapshots"]


def domains_in(snapshot: Snapshot, settings: Settings) -> List[str]:
    names = {settings.domain_of(key) for key in snapshot.keys_under(settings.layout.tasks_dir)}
    return sorted(name for name in names if name)


def load_document(snapshot: Snapshot, key: str, table: TableSchema, domain: str) -> TableDocument:
    if not snapshot.has(key):
        return new_document(table, domain)
    return parse_document(snapshot.text(key), table, source=key)


def load_seal(snapshot: Snapshot, key: str) -> Optional[Dict[str, Any]]:
    if not snapshot.has(key):
        return None
    try:
        data = orjson.loads(snapshot.files[key])
    except orjson.JSONDecodeError as exc:
        raise ParseError(1, f"seal is not valid JSON: {exc}", key) from exc
    if not isinstance(data, dict) or not isinstance(data.get("sections"), list):
        raise ParseError(1, "seal has no sections list", key)
    return data


def load_domain(snapshot: Snapshot, settings: Settings, domain: str) -> DomainState:
    return DomainState(
        domain=domain,
        backlog=load_document(snapshot, settings.backlog_key(domain), ACTIVE_TABLE, domain),
        archive=load_document(snapshot, settings.completed_key(domain), COMPLETED_TABLE, domain),
        seal=load_seal(snapshot, settings.snapshot_key(domain)),
    )


def load_archives(
    snapshot: Snapshot, settings: Settings, exclude: str = ""
) -> Dict[str, TableDocument]:
    archives: Dict[str, TableDocument] = {}
    for domain in domains_in(snapshot, settings):
        if domain == exclude:
            continue
        key = settings.completed_key(domain)
        if snapshot.has(key):
            archives[domain] = load_document(snapshot, key, COMPLETED_TABLE, domain)
    return archives
