"""Interface to the external collaborators behind the domain tools.

`TenderBackend` groups every call the tools make outside the orchestration
core: tender search, profiles, application storage, email, form submission,
contract retrieval, and legal references. `InMemoryTenderBackend` is a
deterministic local implementation for development and tests.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Protocol

from tender_agent.types import utcnow

Tender = dict[str, Any]


@dataclass(slots=True)
class TenderFilters:
    countries: list[str] = field(default_factory=list)
    cities: list[str] = field(default_factory=list)
    cpv_codes: list[str] = field(default_factory=list)
    procedure_type: str | None = None
    contract_nature: str | None = None
    framework_agreement: bool | None = None
    electronic_auction: bool | None = None
    subcontracting_allowed: bool | None = None
    min_value: float | None = None
    max_value: float | None = None
    buyer: str | None = None
    days_back: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            key: value
            for key, value in {
                "countries": self.countries,
                "cities": self.cities,
                "cpvCodes": self.cpv_codes,
                "procedureType": self.procedure_type,
                "contractNature": self.contract_nature,
                "frameworkAgreement": self.framework_agreement,
                "electronicAuction": self.electronic_auction,
                "subcontractingAllowed": self.subcontracting_allowed,
                "minValue": self.min_value,
                "maxValue": self.max_value,
                "buyer": self.buyer,
                "daysBack": self.days_back,
            }.items()
            if value not in (None, [])
        }


class TenderBackend(Protocol):
    async def search(self, query: str, limit: int) -> list[Tender]:
        """Run a TED Expert Query."""

    async def filter_tenders(self, filters: TenderFilters, limit: int) -> list[Tender]:
        """Return tenders matching structured filters, newest first."""

    async def get_tender(self, tender_id: str) -> Tender | None: ...

    async def company_profile(self, user_id: str) -> dict[str, Any] | None: ...

    async def save_match_score(self, company_id: str, tender_id: str, score: float) -> None: ...

    async def user_activity(self, user_id: str) -> dict[str, Any]:
        """Recent searches, viewed and favorite tender ids."""

    async def save_application(self, application: dict[str, Any]) -> dict[str, Any]:
        """Persist a new application and return it with its `applicationId`."""

    async def get_application(self, application_id: str) -> dict[str, Any] | None: ...

    async def update_application(
        self, application_id: str, changes: Mapping[str, Any]
    ) -> dict[str, Any]: ...

    async def list_applications(self, user_id: str) -> list[dict[str, Any]]: ...

    async def send_email(self, recipient: str, subject: str, body: str) -> str:
        """Deliver an email and return the provider message id."""

    async def submit_form(self, url: str, data: Mapping[str, Any]) -> dict[str, Any]: ...

    async def store_contract(self, contract_id: str, text: str, language: str) -> int:
        """Index a contract and return the number of stored chunks."""

    async def search_contract(self, contract_id: str, query: str, limit: int) -> list[str]: ...

    async def search_legal(self, query: str, limit: int) -> list[dict[str, Any]]: ...


_TEXT_CLAUSE = re.compile(r'~\s*"((?:[^"\\]|\\.)*)"')
_COUNTRY_CLAUSE = re.compile(r"place-of-performance-country-proc IN \(([^)]*)\)")
_CPV_CODE = re.compile(r'"(\d{8})"')
_DAYS_BACK = re.compile(r"publication-date >= today\(-(\d+)\)")
_WORD = re.compile(r"\w+", re.UNICODE)


def _tokens(text: str) -> list[str]:
    return [token.lower() for token in _WORD.findall(text) if len(token) > 2]


def _keyword_score(tender: Mapping[str, Any], tokens: Iterable[str]) -> float:
    haystack = " ".join(
        str(tender.get(key) or "") for key in ("title", "summary", "buyer", "description")
    ).lower()
    return float(sum(haystack.count(token) for token in tokens))


def _published(tender: Mapping[str, Any]) -> date | None:
    value = tender.get("publicationDate")
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value)).date()
    except ValueError:
        return None


def _cpv_list(tender: Mapping[str, Any]) -> list[str]:
    cpv = tender.get("cpv")
    if isinstance(cpv, str):
        return [cpv]
    return [str(code) for code in cpv or ()]


def _chunk_text(text: str, size: int = 800) -> list[str]:
    chunks: list[str] = []
    current = ""
    for paragraph in (part.strip() for part in text.split("\n")):
        if not paragraph:
            continue
        if current and len(current) + len(paragraph) + 1 > size:
            chunks.append(current)
            current = paragraph
        else:
            current = f"{current}\n{paragraph}" if current else paragraph
    if current:
        chunks.append(current)
    return chunks


class InMemoryTenderBackend:
    """Dict-backed backend with keyword scoring over a fixed tender list."""

    def __init__(
        self,
        tenders: Iterable[Tender] = (),
        *,
        profiles: Mapping[str, dict[str, Any]] | None = None,
        activity: Mapping[str, dict[str, Any]] | None = None,
        legal_references: Iterable[dict[str, Any]] = (),
        today: date | None = None,
    ) -> None:
        self.tenders: list[Tender] = [dict(tender) for tender in tenders]
        self.profiles: dict[str, dict[str, Any]] = dict(profiles or {})
        self.activity: dict[str, dict[str, Any]] = dict(activity or {})
        self.legal_references = list(legal_references)
        self.scores: dict[tuple[str, str], float] = {}
        self.applications: dict[str, dict[str, Any]] = {}
        self.outbox: list[dict[str, str]] = []
        self.submissions: list[dict[str, Any]] = []
        self.contracts: dict[str, list[str]] = {}
        self._today = today

    @property
    def today(self) -> date:
        return self._today or utcnow().date()

    async def search(self, query: str, limit: int) -> list[Tender]:
        tokens = [token for phrase in _TEXT_CLAUSE.findall(query) for token in _tokens(phrase)]
        country_match = _COUNTRY_CLAUSE.search(query)
        days_match = _DAYS_BACK.search(query)
        filters = TenderFilters(
            countries=[code.strip() for code in country_match.group(1).split(",")]
            if country_match
            else [],
            cpv_codes=_CPV_CODE.findall(query),
            days_back=int(days_match.group(1)) if days_match else None,
        )
        candidates = self._matching(filters)
        if not tokens:
            return candidates[:limit]
        scored = [(tender, _keyword_score(tender, tokens)) for tender in candidates]
        ranked = sorted((item for item in scored if item[1] > 0), key=lambda item: -item[1])
        return [tender for tender, _ in ranked[:limit]]

    async def filter_tenders(self, filters: TenderFilters, limit: int) -> list[Tender]:
        return self._matching(filters)[:limit]

    async def get_tender(self, tender_id: str) -> Tender | None:
        for tender in self.tenders:
            if tender_id in (tender.get("publicationNumber"), tender.get("noticeId")):
                return dict(tender)
        return None

    async def company_profile(self, user_id: str) -> dict[str, Any] | None:
        profile = self.profiles.get(user_id)
        return dict(profile) if profile is not None else None

    async def save_match_score(self, company_id: str, tender_id: str, score: float) -> None:
        self.scores[(company_id, tender_id)] = score

    async def user_activity(self, user_id: str) -> dict[str, Any]:
        return dict(self.activity.get(user_id, {}))

    async def save_application(self, application: dict[str, Any]) -> dict[str, Any]:
        application_id = f"app-{len(self.applications) + 1:04d}"
        stored = {
            **application,
            "applicationId": application_id,
            "createdAt": utcnow().isoformat(),
            "history": [],
        }
        self.applications[application_id] = stored
        return dict(stored)

    async def get_application(self, application_id: str) -> dict[str, Any] | None:
        application = self.applications.get(application_id)
        return dict(application) if application is not None else None

    async def update_application(
        self, application_id: str, changes: Mapping[str, Any]
    ) -> dict[str, Any]:
        application = self.applications.get(application_id)
        if application is None:
            raise LookupError(f"Application {application_id} not found")
        application.update(changes)
        application["history"].append({"at": utcnow().isoformat(), **changes})
        return dict(application)

    async def list_applications(self, user_id: str) -> list[dict[str, Any]]:
        return [
            dict(application)
            for application in self.applications.values()
            if application.get("userId") == user_id
        ]

    async def send_email(self, recipient: str, subject: str, body: str) -> str:
        self.outbox.append({"to": recipient, "subject": subject, "body": body})
        return f"msg-{len(self.outbox):04d}"

    async def submit_form(self, url: str, data: Mapping[str, Any]) -> dict[str, Any]:
        self.submissions.append({"url": url, "data": dict(data)})
        return {"status": "received", "reference": f"sub-{len(self.submissions):04d}"}

    async def store_contract(self, contract_id: str, text: str, language: str) -> int:
        self.contracts[contract_id] = _chunk_text(text)
        return len(self.contracts[contract_id])

    async def search_contract(self, contract_id: str, query: str, limit: int) -> list[str]:
        chunks = self.contracts.get(contract_id)
        if chunks is None:
            raise LookupError(f"Contract {contract_id} not found")
        tokens = _tokens(query)
        scored = sorted(
            ((chunk, sum(chunk.lower().count(token) for token in tokens)) for chunk in chunks),
            key=lambda item: -item[1],
        )
        return [chunk for chunk, score in scored if score > 0][:limit]

    async def search_legal(self, query: str, limit: int) -> list[dict[str, Any]]:
        tokens = _tokens(query)
        scored = [
            (reference, _keyword_score(reference, tokens)) for reference in self.legal_references
        ]
        ranked = sorted((item for item in scored if item[1] > 0), key=lambda item: -item[1])
        return [dict(reference) for reference, _ in ranked[:limit]]

    def _matching(self, filters: TenderFilters) -> list[Tender]:
        cutoff = (
            self.today - timedelta(days=filters.days_back)
            if filters.days_back is not None
            else None
        )
        matches: list[Tender] = []
        for tender in self.tenders:
            if filters.countries and tender.get("country") not in filters.countries:
                continue
            if filters.cities and tender.get("city") not in filters.cities:
                continue
            if filters.cpv_codes and not any(
                code.startswith(prefix.rstrip("0")) or code == prefix
                for code in _cpv_list(tender)
                for prefix in filters.cpv_codes
            ):
                continue
            if filters.procedure_type and tender.get("procedureType") != filters.procedure_type:
                continue
            if filters.contract_nature and tender.get("contractNature") != filters.contract_nature:
                continue
            if not _flag_matches(tender, "frameworkAgreement", filters.framework_agreement):
                continue
            if not _flag_matches(tender, "electronicAuction", filters.electronic_auction):
                continue
            if not _flag_matches(tender, "subcontractingAllowed", filters.subcontracting_allowed):
                continue
            value = tender.get("value")
            if filters.min_value is not None and (value is None or value < filters.min_value):
                continue
            if filters.max_value is not None and (value is None or value > filters.max_value):
                continue
            if filters.buyer and filters.buyer.lower() not in str(tender.get("buyer", "")).lower():
                continue
            published = _published(tender)
            if cutoff is not None and published is not None and published < cutoff:
                continue
            matches.append(dict(tender))
        matches.sort(key=lambda item: str(item.get("publicationDate") or ""), reverse=True)
        return matches


def _flag_matches(tender: Mapping[str, Any], key: str, expected: bool | None) -> bool:
    return expected is None or bool(tender.get(key)) is expected
