from __future__ import annotations

from collections.abc import Collection, Iterable, Sequence
from typing import Final

from consult_dispatch.core.utils.payload import (
    append_link,
    find_link,
    is_mapping,
    normalize_document,
    parse_amount,
    pick,
    to_nullable_str,
)
from consult_dispatch.core.workflow.types import RawEntry, ResultEntry, Subject

STATUS_KEYS: Final[tuple[str, ...]] = ("status", "situacao", "state")
DESCRIPTION_KEYS: Final[tuple[str, ...]] = ("description", "descricao", "message", "mensagem", "detail")
VALUE_KEYS: Final[tuple[str, ...]] = (
    "value",
    "availableMargin",
    "available_margin",
    "valorMargem",
    "valor_margem",
    "margem",
    "valor",
)
TABLE_KEYS: Final[tuple[str, ...]] = ("table", "nomeTabela", "nome_tabela", "tabela")
TERM_KEYS: Final[tuple[str, ...]] = ("term", "prazo", "tokenTabela", "token_tabela")
DOCUMENT_KEYS: Final[tuple[str, ...]] = ("document", "cpf", "documentNumber")


def normalize_entry(raw: RawEntry) -> ResultEntry:
    status = str(pick(raw, STATUS_KEYS, "") or "").strip().upper()
    description = to_nullable_str(pick(raw, DESCRIPTION_KEYS))
    description = append_link(description, find_link(raw))
    document = pick(raw, DOCUMENT_KEYS)
    return ResultEntry(
        status=status,
        description=description,
        value=parse_amount(pick(raw, VALUE_KEYS)),
        table=to_nullable_str(pick(raw, TABLE_KEYS), 255),
        term=to_nullable_str(pick(raw, TERM_KEYS), 20),
        document=normalize_document(document) if document is not None else None,
        payload=dict(raw),
    )


def normalize_entries(raw_entries: Iterable[object]) -> list[ResultEntry]:
    return [normalize_entry(raw) for raw in raw_entries if is_mapping(raw)]


def distinct_entries(entries: Iterable[ResultEntry]) -> list[ResultEntry]:
    """Drop structural duplicates, keeping the first occurrence and the original order."""
    seen: set[str] = set()
    unique: list[ResultEntry] = []
    for entry in entries:
        fingerprint = entry.fingerprint()
        if fingerprint in seen:
            continue
        seen.add(fingerprint)
        unique.append(entry)
    return unique


def filter_for_subject(entries: Sequence[ResultEntry], subject: Subject) -> list[ResultEntry]:
    # Entries without a document cannot be attributed and are kept.
    if not subject.document:
        return list(entries)
    return [entry for entry in entries if not entry.document or entry.document == subject.document]


def is_pending(entry: ResultEntry, pending_statuses: Collection[str]) -> bool:
    return entry.status in pending_statuses


def all_pending(entries: Sequence[ResultEntry], pending_statuses: Collection[str]) -> bool:
    if not entries:
        return False
    return all(is_pending(entry, pending_statuses) for entry in entries)
