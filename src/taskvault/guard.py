from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from .codec import TableDocument
from .config import Settings
from .errors import ImmutabilityViolation, ValidationError
from .schemas import Violation
from .store import VersionedStore
from .utils import canonical_dumps, hash_bytes
from .workspace import (
    SEAL_SCHEMA_VERSION,
    DomainState,
    load_archives,
    load_domain,
    read_prefixes,
)

logger = logging.getLogger(__name__)

UNSEALED_ARCHIVE = "unsealed_archive"
IMMUTABILITY_CODES = {
    "sealed_section_missing",
    "sealed_section_modified",
    "sealed_section_truncated",
    UNSEALED_ARCHIVE,
}


def seal_archive(domain: str, archive: TableDocument) -> Dict[str, Any]:
    sections = []
    for section in archive.sections:
        content = section.digest_source()
        sections.append(
            {
                "key": section.key,
                "digest": hash_bytes(content),
                "length": len(content),
            }
        )
    return {"schema_version": SEAL_SCHEMA_VERSION, "domain": domain, "sections": sections}


def dump_seal(seal: Mapping[str, Any]) -> bytes:
    return canonical_dumps(dict(seal)) + b"\n"


def check_immutability(state: DomainState) -> List[Violation]:
    if state.seal is None:
        if not state.archive.sections:
            return []
        return [
            Violation(
                code=UNSEALED_ARCHIVE,
                subject=state.domain,
                message="archive has sections but no seal; run `taskvault check --seal` to adopt it",
            )
        ]
    violations: List[Violation] = []
    sealed = [entry for entry in state.seal.get("sections", []) if isinstance(entry, dict)]
    current = state.archive.sections
    for index, entry in enumerate(sealed):
        key = str(entry.get("key", ""))
        if index >= len(current) or current[index].key != key:
            violations.append(
                Violation(
                    code="sealed_section_missing",
                    subject=state.domain,
                    field=key,
                    message=f"sealed section {key} is no longer section #{index + 1}",
                )
            )
            continue
        content = current[index].digest_source()
        length = int(entry.get("length", -1))
        if index < len(sealed) - 1:
            if hash_bytes(content) != entry.get("digest"):
                violations.append(
                    Violation(
                        code="sealed_section_modified",
                        subject=state.domain,
                        field=key,
                        message=f"section {key} differs from its sealed bytes",
                        line=current[index].line or None,
                    )
                )
        elif len(content) < length:
            violations.append(
                Violation(
                    code="sealed_section_truncated",
                    subject=state.domain,
                    field=key,
                    message=f"section {key} lost content since it was sealed",
                    line=current[index].line or None,
                )
            )
        elif hash_bytes(content[:length]) != entry.get("digest"):
            violations.append(
                Violation(
                    code="sealed_section_modified",
                    subject=state.domain,
                    field=key,
                    message=f"sealed rows of section {key} were edited",
                    line=current[index].line or None,
                )
            )
    return violations


def check_state(state: DomainState, other_archives: Mapping[str, TableDocument]) -> List[Violation]:
    violations: List[Violation] = []
    archived_ids = {record.id for record, _ in state.archive.records()}
    for record, span in state.backlog.records():
        if record.id in archived_ids:
            violations.append(
                Violation(
                    code="active_and_archived",
                    subject=record.id,
                    message=f"listed in both the backlog and the archive of {state.domain}",
                    line=span.start_line,
                )
            )
    owners: Dict[str, List[str]] = {}
    archives = dict(other_archives)
    archives[state.domain] = state.archive
    for domain in sorted(archives):
        for record, _ in archives[domain].records():
            owners.setdefault(record.id, []).append(domain)
    for task_id in sorted(owners):
        domains = owners[task_id]
        if len(domains) > 1 and state.domain in domains:
            violations.append(
                Violation(
                    code="duplicate_archived_id",
                    subject=task_id,
                    message=f"archived {len(domains)} times ({', '.join(domains)})",
                )
            )
    violations.extend(check_immutability(state))
    return violations


def raise_for(violations: List[Violation]) -> None:
    if not violations:
        return
    if any(violation.code in IMMUTABILITY_CODES for violation in violations):
        raise ImmutabilityViolation(violations)
    raise ValidationError(violations, "consistency check failed")


class ConsistencyGuard:
    def __init__(self, settings: Settings, store: VersionedStore) -> None:
        self.settings = settings
        self.store = store

    def check(self, domain: str) -> List[Violation]:
        snapshot = self.store.read(read_prefixes(self.settings))
        state = load_domain(snapshot, self.settings, domain)
        others = load_archives(snapshot, self.settings, exclude=domain)
        violations = check_state(state, others)
        if violations:
            logger.warning("%s: %d consistency violation(s)", domain, len(violations))
        return violations

    def seal(self, domain: str) -> Optional[Dict[str, Any]]:
        """Record the current archive as the trusted baseline when none exists yet."""
        snapshot = self.store.read(read_prefixes(self.settings))
        state = load_domain(snapshot, self.settings, domain)
        if state.seal is not None:
            return None
        violations = check_state(state, load_archives(snapshot, self.settings, exclude=domain))
        raise_for([violation for violation in violations if violation.code != UNSEALED_ARCHIVE])
        seal = seal_archive(domain, state.archive)
        self.store.commit(
            snapshot,
            {self.settings.snapshot_key(domain): dump_seal(seal)},
            f"taskvault: seal {domain} archive",
        )
        return seal
