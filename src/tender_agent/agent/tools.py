"""Domain tools for the capability handlers."""

from __future__ import annotations

import json
import re
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from datetime import date, datetime
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field, HttpUrl

from tender_agent.agent.registry import ToolRegistry, ToolSpec
from tender_agent.services.backend import Tender, TenderBackend, TenderFilters
from tender_agent.types import utcnow

logger = structlog.get_logger(__name__)

COUNTRY_CODES: dict[str, str] = {
    "italy": "ITA",
    "italia": "ITA",
    "france": "FRA",
    "francia": "FRA",
    "germany": "DEU",
    "germania": "DEU",
    "spain": "ESP",
    "spagna": "ESP",
    "portugal": "PRT",
    "portogallo": "PRT",
    "netherlands": "NLD",
    "belgium": "BEL",
    "austria": "AUT",
    "greece": "GRC",
    "poland": "POL",
    "romania": "ROU",
}
DEFAULT_COUNTRY = "ITA"

_CPV_EXACT = re.compile(r"^\d{8}\*?$")
_CPV_EMBEDDED = re.compile(r"(\d{8})")


def normalize_country_code(value: str) -> str:
    """Map a country name or code to ISO 3166-1 alpha-3; unknown input falls back to ITA."""
    cleaned = value.strip()
    if cleaned.lower() in COUNTRY_CODES:
        return COUNTRY_CODES[cleaned.lower()]
    if re.fullmatch(r"[A-Za-z]{3}", cleaned):
        return cleaned.upper()
    logger.warning("tools.unknown_country", country=value, fallback=DEFAULT_COUNTRY)
    return DEFAULT_COUNTRY


def validate_cpv_code(value: str) -> str | None:
    cleaned = value.strip()
    if _CPV_EXACT.match(cleaned):
        return cleaned.rstrip("*")
    match = _CPV_EMBEDDED.search(cleaned)
    if match:
        return match.group(1)
    logger.warning("tools.invalid_cpv", cpv=value)
    return None


def build_ted_query(
    *,
    country: str = DEFAULT_COUNTRY,
    days_back: int = 3,
    cpv: Iterable[str] | None = None,
    text: str | None = None,
) -> str:
    """Build a TED Expert Query from structured search intent."""

    window = "today()" if days_back == 0 else f"today(-{days_back})"
    parts = [
        f"(place-of-performance-country-proc IN ({normalize_country_code(country)}))",
        f"(publication-date >= {window} AND publication-date <= today())",
    ]

    codes = [code for code in (validate_cpv_code(item) for item in cpv or ()) if code]
    if len(codes) == 1:
        parts.append(f'classification-cpv = "{codes[0]}"')
    elif codes:
        parts.append("classification-cpv IN (" + ", ".join(f'"{code}"' for code in codes) + ")")

    if text and text.strip():
        term = text.strip().replace('"', '\\"')
        parts.append(
            f'(notice-title ~ "{term}" OR description-proc ~ "{term}" OR buyer-name ~ "{term}")'
        )
    return " AND ".join(parts)


class QueryIntentInput(BaseModel):
    country: str = Field(
        default=DEFAULT_COUNTRY,
        description="ISO 3166-1 alpha-3 country code such as ITA, FRA, DEU.",
    )
    days_back: int = Field(default=3, ge=0, le=30, description="Days to look back from today.")
    cpv: list[str] | None = Field(default=None, description="8-digit CPV codes.")
    text: str | None = Field(default=None, description="Free-text search term.")


class SearchTendersInput(BaseModel):
    q: str = Field(min_length=1, description="TED Expert Query from build_ted_query.")
    limit: int = Field(default=30, ge=1, le=50)


class AdvancedSearchInput(BaseModel):
    procedure_type: (
        Literal[
            "open",
            "restricted",
            "negotiated",
            "competitive-dialogue",
            "innovation-partnership",
            "framework-agreement",
        ]
        | None
    ) = None
    contract_nature: (
        Literal["services", "supplies", "works", "services-and-supplies", "works-and-services"]
        | None
    ) = None
    framework_agreement: bool | None = None
    electronic_auction: bool | None = None
    subcontracting_allowed: bool | None = None
    min_value: float | None = Field(default=None, ge=0)
    max_value: float | None = Field(default=None, ge=0)
    countries: list[str] | None = None
    cities: list[str] | None = None
    cpv_codes: list[str] | None = None
    days_back: int = Field(default=7, ge=1, le=30)
    limit: int = Field(default=20, ge=1, le=50)


class FrameworkAgreementSearchInput(BaseModel):
    countries: list[str] | None = None
    cpv_codes: list[str] | None = None
    days_back: int = Field(default=30, ge=1, le=30)
    limit: int = Field(default=20, ge=1, le=50)


class EmptyInput(BaseModel):
    pass


class CompanyProfileInput(BaseModel):
    annual_revenue: float | None = None
    employee_count: int | None = None
    certifications: list[str] = Field(default_factory=list)
    technical_skills: list[str] = Field(default_factory=list)
    operating_regions: list[str] = Field(default_factory=list)
    primary_sectors: list[str] = Field(default_factory=list, description="CPV prefixes.")


class AnalyzeEligibilityInput(BaseModel):
    tender_id: str = Field(min_length=1)
    company_profile: CompanyProfileInput


class GetBestTendersInput(BaseModel):
    user_id: str = Field(min_length=1)
    limit: int = Field(default=10, ge=1, le=20)
    days_back: int = Field(default=7, ge=1, le=30)
    regions: list[str] | None = None
    cpv_codes: list[str] | None = None


class SaveMatchScoreInput(BaseModel):
    company_id: str = Field(min_length=1)
    tender_id: str = Field(min_length=1)
    score: float = Field(default=0.0, ge=0.0, le=1.0)


class UserContextInput(BaseModel):
    user_id: str = Field(min_length=1)
    context: str | None = None


class AnalyzeUserBehaviorInput(BaseModel):
    user_id: str = Field(min_length=1)
    days_back: int = Field(default=30, ge=1, le=90)


class ContextualSuggestionsInput(BaseModel):
    current_query: str = Field(min_length=1)
    recent_tenders: list[dict[str, Any]] = Field(default_factory=list)


class RankTendersInput(BaseModel):
    user_id: str = Field(min_length=1)
    tender_ids: list[str] = Field(min_length=1)
    limit: int = Field(default=10, ge=1, le=50)


class GenerateShortlistInput(BaseModel):
    user_id: str = Field(min_length=1)
    days_back: int = Field(default=7, ge=1, le=30)
    top_n: int = Field(default=10, ge=1, le=20)


class TenderIdInput(BaseModel):
    tender_id: str = Field(min_length=1)


class BuyerPatternsInput(BaseModel):
    buyer_name: str = Field(min_length=1)
    limit: int = Field(default=10, ge=1, le=50)


Tone = Literal["formal", "professional", "friendly", "business"]


class DraftApplicationInput(BaseModel):
    user_id: str = Field(min_length=1)
    tender_id: str = Field(min_length=1)
    submission_method: Literal["email", "form"] = "email"
    tone: Tone | None = None


class SendApplicationEmailInput(BaseModel):
    user_id: str = Field(min_length=1)
    application_id: str = Field(min_length=1)
    recipient_email: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    subject: str = Field(min_length=1)
    body: str = Field(min_length=1)


class SubmitApplicationFormInput(BaseModel):
    user_id: str = Field(min_length=1)
    application_id: str = Field(min_length=1)
    submission_url: HttpUrl
    form_data: dict[str, Any]


class TrackApplicationInput(BaseModel):
    user_id: str = Field(min_length=1)
    tender_id: str = Field(min_length=1)
    tender_title: str = Field(min_length=1)
    buyer_name: str = Field(min_length=1)
    draft_content: str = Field(min_length=1)
    subject: str | None = None
    tone: Tone = "professional"
    submission_method: Literal["email", "form", "manual"] = "email"


class ApplicationStatusInput(BaseModel):
    user_id: str = Field(min_length=1)
    application_id: str | None = None
    tender_id: str | None = None


class ProcessContractInput(BaseModel):
    contract_id: str = Field(min_length=1)
    contract_text: str = Field(min_length=100)
    language: Literal["it", "en"] = "it"


FocusArea = Literal[
    "risk",
    "obligations",
    "rights",
    "payment",
    "termination",
    "liability",
    "disputes",
    "compliance",
]


class ReviewContractInput(BaseModel):
    contract_id: str = Field(min_length=1)
    questions: list[str] = Field(default_factory=list)
    focus_areas: list[FocusArea] = Field(default_factory=list)


class LegalReferenceInput(BaseModel):
    query: str = Field(min_length=1)
    limit: int = Field(default=5, ge=1, le=20)


DEFAULT_FOCUS_AREAS: tuple[str, ...] = ("risk", "obligations", "payment", "termination")


def match_score(tender: Mapping[str, Any], profile: Mapping[str, Any]) -> tuple[float, list[str], list[str]]:
    """Score company/tender fit in [0, 1] with the reasons and gaps found."""

    reasons: list[str] = []
    gaps: list[str] = []
    score = 0.0

    sectors = [str(sector) for sector in profile.get("primary_sectors") or ()]
    cpv = tender.get("cpv") or []
    codes = [cpv] if isinstance(cpv, str) else [str(code) for code in cpv]
    if sectors and any(code.startswith(sector.rstrip("0")) for code in codes for sector in sectors):
        score += 0.4
        reasons.append("CPV matches the company's sectors")
    elif sectors:
        gaps.append("CPV outside the company's sectors")

    regions = [str(region) for region in profile.get("operating_regions") or ()]
    location = {str(tender.get("country") or ""), str(tender.get("city") or "")}
    if not regions or location & set(regions):
        score += 0.3
        reasons.append("Location within operating regions")
    else:
        gaps.append("Location outside operating regions")

    value = tender.get("value")
    revenue = profile.get("annual_revenue")
    if value is None or revenue is None:
        score += 0.15
    elif revenue >= value * 0.5:
        score += 0.3
        reasons.append("Revenue adequate for contract value")
    else:
        gaps.append("Revenue below half of the contract value")

    return round(min(score, 1.0), 2), reasons, gaps


def recommendation(score: float) -> str:
    if score >= 0.75:
        return "high"
    if score >= 0.5:
        return "medium"
    if score >= 0.3:
        return "low"
    return "skip"


def competition_level(tender: Mapping[str, Any]) -> str:
    value = tender.get("value") or 0
    if value >= 1_000_000:
        return "high"
    if value >= 100_000:
        return "medium"
    return "low"


def _dump(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, default=str)


def register_tender_tools(
    registry: ToolRegistry,
    backend: TenderBackend,
    *,
    clock: Callable[[], datetime] = utcnow,
) -> None:
    """Register the tender tool set used by the capability handlers.

    Tools that return collections serialize them to JSON so the response
    formatter can recover structured results from the transcript.
    """

    async def _require_profile(user_id: str) -> dict[str, Any]:
        profile = await backend.company_profile(user_id)
        if profile is None:
            raise ValueError(
                f"Company profile missing for user {user_id}; it is required to score tenders"
            )
        return profile

    async def _require_tender(tender_id: str) -> Tender:
        tender = await backend.get_tender(tender_id)
        if tender is None:
            raise LookupError(f"Tender {tender_id} not found")
        return tender

    async def _require_application(application_id: str, user_id: str) -> dict[str, Any]:
        application = await backend.get_application(application_id)
        if application is None or application.get("userId") != user_id:
            raise LookupError(f"Application {application_id} not found for user {user_id}")
        return application

    def _scored(tenders: Iterable[Tender], profile: Mapping[str, Any]) -> list[Tender]:
        scored = []
        for tender in tenders:
            score, reasons, _ = match_score(tender, profile)
            scored.append({**tender, "score": score, "reasons": reasons})
        return sorted(scored, key=lambda item: -item["score"])

    # search

    async def _build_query(data: QueryIntentInput) -> str:
        query = build_ted_query(
            country=data.country, days_back=data.days_back, cpv=data.cpv, text=data.text
        )
        logger.info("tools.ted_query_built", query=query)
        return query

    async def _search(data: SearchTendersInput) -> str:
        tenders = await backend.search(data.q, data.limit)
        logger.info("tools.search_tenders", results=len(tenders))
        return _dump(tenders)

    async def _advanced_search(data: AdvancedSearchInput) -> str:
        filters = TenderFilters(
            countries=[normalize_country_code(code) for code in data.countries or ()],
            cities=list(data.cities or ()),
            cpv_codes=[code for code in map(validate_cpv_code, data.cpv_codes or ()) if code],
            procedure_type=data.procedure_type,
            contract_nature=data.contract_nature,
            framework_agreement=data.framework_agreement,
            electronic_auction=data.electronic_auction,
            subcontracting_allowed=data.subcontracting_allowed,
            min_value=data.min_value,
            max_value=data.max_value,
            days_back=data.days_back,
        )
        tenders = await backend.filter_tenders(filters, data.limit)
        return _dump({"tenders": tenders, "filters": filters.to_dict()})

    async def _framework_search(data: FrameworkAgreementSearchInput) -> str:
        filters = TenderFilters(
            countries=[normalize_country_code(code) for code in data.countries or ()],
            cpv_codes=[code for code in map(validate_cpv_code, data.cpv_codes or ()) if code],
            framework_agreement=True,
            days_back=data.days_back,
        )
        tenders = await backend.filter_tenders(filters, data.limit)
        return _dump({"tenders": tenders, "filters": filters.to_dict()})

    async def _current_date(data: EmptyInput) -> str:
        return clock().strftime("%Y%m%d")

    # analysis

    async def _analyze_eligibility(data: AnalyzeEligibilityInput) -> str:
        tender = await _require_tender(data.tender_id)
        score, reasons, gaps = match_score(tender, data.company_profile.model_dump())
        return _dump(
            {
                "tenderId": data.tender_id,
                "score": score,
                "recommendation": recommendation(score),
                "reasons": reasons,
                "missingRequirements": gaps,
                "competition": competition_level(tender),
            }
        )

    async def _best_tenders(data: GetBestTendersInput) -> str:
        profile = await _require_profile(data.user_id)
        filters = TenderFilters(
            countries=[normalize_country_code(code) for code in data.regions or ()],
            cpv_codes=list(data.cpv_codes or ()),
            days_back=data.days_back,
        )
        tenders = await backend.filter_tenders(filters, 100)
        return _dump({"tenders": _scored(tenders, profile)[: data.limit]})

    async def _save_score(data: SaveMatchScoreInput) -> str:
        await backend.save_match_score(data.company_id, data.tender_id, data.score)
        return "OK"

    # personalization

    async def _smart_suggestions(data: UserContextInput) -> str:
        activity = await backend.user_activity(data.user_id)
        searches = [str(item) for item in activity.get("searches") or ()]
        suggestions = [f"Nuovi bandi per '{term}'" for term in dict.fromkeys(reversed(searches))][:5]
        if data.context:
            suggestions.insert(0, f"Bandi simili a: {data.context}")
        if not suggestions:
            suggestions.append("Completa il profilo aziendale per ricevere suggerimenti mirati")
        return _dump({"suggestions": suggestions})

    async def _user_behavior(data: AnalyzeUserBehaviorInput) -> str:
        activity = await backend.user_activity(data.user_id)
        searches = [str(item) for item in activity.get("searches") or ()]
        keywords = Counter(
            word for term in searches for word in term.lower().split() if len(word) > 2
        )
        return _dump(
            {
                "userId": data.user_id,
                "searchCount": len(searches),
                "topKeywords": [word for word, _ in keywords.most_common(5)],
                "favoriteCount": len(activity.get("favorites") or ()),
                "viewedCount": len(activity.get("viewed") or ()),
            }
        )

    async def _contextual_suggestions(data: ContextualSuggestionsInput) -> str:
        buyers = [str(item.get("buyer")) for item in data.recent_tenders if item.get("buyer")]
        suggestions = [f"Affina la ricerca '{data.current_query}' per regione o CPV"]
        suggestions.extend(f"Altri bandi di {buyer}" for buyer in dict.fromkeys(buyers))
        return _dump({"suggestions": suggestions[:5]})

    async def _personalized(data: UserContextInput) -> str:
        profile = await _require_profile(data.user_id)
        filters = TenderFilters(cpv_codes=list(profile.get("primary_sectors") or ()), days_back=30)
        tenders = await backend.filter_tenders(filters, 50)
        return _dump({"tenders": _scored(tenders, profile)[:10]})

    # ranking

    async def _rank(data: RankTendersInput) -> str:
        profile = await _require_profile(data.user_id)
        tenders = [tender for tender in [await backend.get_tender(i) for i in data.tender_ids] if tender]
        if not tenders:
            raise LookupError(f"Tenders not found: {', '.join(data.tender_ids)}")
        return _dump({"ranked": _scored(tenders, profile)[: data.limit]})

    async def _shortlist(data: GenerateShortlistInput) -> str:
        profile = await _require_profile(data.user_id)
        tenders = await backend.filter_tenders(TenderFilters(days_back=data.days_back), 100)
        today = clock().date()
        shortlist = []
        for tender in _scored(tenders, profile):
            days_left = _days_until(tender.get("deadline"), today)
            urgency = 0.1 if days_left is not None and 0 <= days_left <= 14 else 0.0
            priority = round(tender["score"] + urgency, 2)
            shortlist.append({**tender, "priority": priority, "daysLeft": days_left})
        shortlist.sort(key=lambda item: -item["priority"])
        return _dump({"shortlist": shortlist[: data.top_n]})

    async def _competition(data: TenderIdInput) -> str:
        tender = await _require_tender(data.tender_id)
        return _dump(
            {
                "tenderId": data.tender_id,
                "level": competition_level(tender),
                "value": tender.get("value"),
                "procedureType": tender.get("procedureType"),
            }
        )

    async def _buyer_patterns(data: BuyerPatternsInput) -> str:
        tenders = await backend.filter_tenders(TenderFilters(buyer=data.buyer_name), data.limit)
        if not tenders:
            raise LookupError(f"Buyer {data.buyer_name} not found in recent tenders")
        values = [tender["value"] for tender in tenders if tender.get("value") is not None]
        cpv = Counter(
            code
            for tender in tenders
            for code in ([tender["cpv"]] if isinstance(tender.get("cpv"), str) else tender.get("cpv") or [])
        )
        return _dump(
            {
                "buyer": data.buyer_name,
                "tenderCount": len(tenders),
                "averageValue": sum(values) / len(values) if values else None,
                "topCpv": [code for code, _ in cpv.most_common(3)],
                "procedureTypes": sorted({str(t.get("procedureType")) for t in tenders if t.get("procedureType")}),
            }
        )

    # application

    async def _draft(data: DraftApplicationInput) -> str:
        profile = await _require_profile(data.user_id)
        tender = await _require_tender(data.tender_id)
        company = profile.get("company_name") or "La nostra azienda"
        subject = f"Manifestazione di interesse - {tender.get('title')}"
        body = (
            f"Spett.le {tender.get('buyer')},\n\n"
            f"{company} desidera partecipare alla procedura \"{tender.get('title')}\".\n"
            f"Certificazioni: {', '.join(profile.get('certifications') or ()) or 'n/d'}.\n\n"
            "Cordiali saluti"
        )
        application = await backend.save_application(
            {
                "userId": data.user_id,
                "tenderId": data.tender_id,
                "status": "draft",
                "submissionMethod": data.submission_method,
                "tone": data.tone or "professional",
                "subject": subject,
                "body": body,
            }
        )
        return _dump({"applicationId": application["applicationId"], "subject": subject, "body": body})

    async def _send_email(data: SendApplicationEmailInput) -> str:
        await _require_application(data.application_id, data.user_id)
        message_id = await backend.send_email(data.recipient_email, data.subject, data.body)
        await backend.update_application(
            data.application_id, {"status": "sent", "messageId": message_id}
        )
        return _dump({"applicationId": data.application_id, "status": "sent", "messageId": message_id})

    async def _submit_form(data: SubmitApplicationFormInput) -> str:
        await _require_application(data.application_id, data.user_id)
        receipt = await backend.submit_form(str(data.submission_url), data.form_data)
        await backend.update_application(
            data.application_id, {"status": "submitted", "receipt": receipt}
        )
        return _dump({"applicationId": data.application_id, "status": "submitted", "receipt": receipt})

    async def _track(data: TrackApplicationInput) -> str:
        application = await backend.save_application(
            {
                "userId": data.user_id,
                "tenderId": data.tender_id,
                "tenderTitle": data.tender_title,
                "buyerName": data.buyer_name,
                "body": data.draft_content,
                "subject": data.subject,
                "tone": data.tone,
                "submissionMethod": data.submission_method,
                "status": "tracking",
            }
        )
        return _dump({"applicationId": application["applicationId"], "status": "tracking"})

    async def _status(data: ApplicationStatusInput) -> str:
        applications = await backend.list_applications(data.user_id)
        if data.application_id:
            applications = [a for a in applications if a.get("applicationId") == data.application_id]
        if data.tender_id:
            applications = [a for a in applications if a.get("tenderId") == data.tender_id]
        return _dump({"applications": applications})

    # contract review

    async def _process_contract(data: ProcessContractInput) -> str:
        chunks = await backend.store_contract(data.contract_id, data.contract_text, data.language)
        return _dump(
            {
                "success": True,
                "chunksCreated": chunks,
                "contractId": data.contract_id,
                "message": f"Contract processed into {chunks} chunks",
            }
        )

    async def _review_contract(data: ReviewContractInput) -> str:
        areas = list(data.focus_areas) or list(DEFAULT_FOCUS_AREAS)
        findings = {
            area: await backend.search_contract(data.contract_id, _FOCUS_QUERIES[area], 3)
            for area in areas
        }
        answers = {
            question: await backend.search_contract(data.contract_id, question, 3)
            for question in data.questions
        }
        return _dump(
            {
                "contractId": data.contract_id,
                "review": {"focusAreas": findings, "answers": answers},
            }
        )

    async def _legal_reference(data: LegalReferenceInput) -> str:
        return _dump(await backend.search_legal(data.query, data.limit))

    specs = [
        ToolSpec(
            name="build_ted_query",
            description=(
                "Build a TED Expert Query from structured intent (country, days_back, cpv, text). "
                "It does not search: call search_tenders with the returned query."
            ),
            args_schema=QueryIntentInput,
            handler=_build_query,
            tags=["search"],
        ),
        ToolSpec(
            name="search_tenders",
            description=(
                "Search TED notices with an Expert Query. Returns a JSON array of tenders; "
                "an empty array means nothing was found."
            ),
            args_schema=SearchTendersInput,
            handler=_search,
            tags=["search"],
        ),
        ToolSpec(
            name="advanced_search",
            description="Search tenders by procedure type, contract nature, value, location and CPV.",
            args_schema=AdvancedSearchInput,
            handler=_advanced_search,
            tags=["search"],
        ),
        ToolSpec(
            name="framework_agreement_search",
            description="Search tenders that are framework agreements.",
            args_schema=FrameworkAgreementSearchInput,
            handler=_framework_search,
            tags=["search"],
        ),
        ToolSpec(
            name="get_current_date",
            description="Return today's date as YYYYMMDD.",
            args_schema=EmptyInput,
            handler=_current_date,
            tags=["search"],
        ),
        ToolSpec(
            name="analyze_eligibility",
            description="Assess whether a company profile is eligible for a tender.",
            args_schema=AnalyzeEligibilityInput,
            handler=_analyze_eligibility,
            tags=["analysis"],
        ),
        ToolSpec(
            name="get_best_tenders",
            description="Best recent tenders for a user, scored against the company profile.",
            args_schema=GetBestTendersInput,
            handler=_best_tenders,
            tags=["analysis"],
        ),
        ToolSpec(
            name="save_match_score",
            description="Save a company/tender match score.",
            args_schema=SaveMatchScoreInput,
            handler=_save_score,
            tags=["analysis"],
        ),
        ToolSpec(
            name="generate_smart_suggestions",
            description="Suggest searches from the user's recent activity.",
            args_schema=UserContextInput,
            handler=_smart_suggestions,
            tags=["personalization"],
        ),
        ToolSpec(
            name="analyze_user_behavior",
            description="Summarize the user's search and favorite activity.",
            args_schema=AnalyzeUserBehaviorInput,
            handler=_user_behavior,
            tags=["personalization"],
        ),
        ToolSpec(
            name="generate_contextual_suggestions",
            description="Suggest follow-ups for the current query and recently seen tenders.",
            args_schema=ContextualSuggestionsInput,
            handler=_contextual_suggestions,
            tags=["personalization"],
        ),
        ToolSpec(
            name="get_personalized_recommendations",
            description="Tenders recommended from the company profile sectors.",
            args_schema=UserContextInput,
            handler=_personalized,
            tags=["personalization"],
        ),
        ToolSpec(
            name="rank_tenders",
            description="Rank the given tenders by fit with the company profile.",
            args_schema=RankTendersInput,
            handler=_rank,
            tags=["ranking"],
        ),
        ToolSpec(
            name="generate_shortlist",
            description="Top N tenders to apply for, weighting fit and deadline urgency.",
            args_schema=GenerateShortlistInput,
            handler=_shortlist,
            tags=["ranking"],
        ),
        ToolSpec(
            name="analyze_competition",
            description="Estimate the competition level for a tender.",
            args_schema=TenderIdInput,
            handler=_competition,
            tags=["ranking"],
        ),
        ToolSpec(
            name="analyze_buyer_patterns",
            description="Summarize a buyer's historical tenders.",
            args_schema=BuyerPatternsInput,
            handler=_buyer_patterns,
            tags=["ranking"],
        ),
        ToolSpec(
            name="draft_application",
            description="Draft an application for a tender and store it as a draft.",
            args_schema=DraftApplicationInput,
            handler=_draft,
            tags=["application"],
        ),
        ToolSpec(
            name="send_application_email",
            description="Send an application by email. Requires explicit user confirmation.",
            args_schema=SendApplicationEmailInput,
            handler=_send_email,
            tags=["application"],
        ),
        ToolSpec(
            name="submit_application_form",
            description="Submit an application form. Requires explicit user confirmation.",
            args_schema=SubmitApplicationFormInput,
            handler=_submit_form,
            tags=["application"],
        ),
        ToolSpec(
            name="track_application",
            description="Start tracking an application prepared outside the assistant.",
            args_schema=TrackApplicationInput,
            handler=_track,
            tags=["application"],
        ),
        ToolSpec(
            name="get_application_status",
            description="Status and history of one or all of the user's applications.",
            args_schema=ApplicationStatusInput,
            handler=_status,
            tags=["application"],
        ),
        ToolSpec(
            name="process_contract",
            description="Process an uploaded contract so it can be reviewed.",
            args_schema=ProcessContractInput,
            handler=_process_contract,
            tags=["contract"],
        ),
        ToolSpec(
            name="review_contract",
            description="Review a processed contract by focus area and answer questions.",
            args_schema=ReviewContractInput,
            handler=_review_contract,
            tags=["contract"],
        ),
        ToolSpec(
            name="search_legal_reference",
            description="Search procurement law references.",
            args_schema=LegalReferenceInput,
            handler=_legal_reference,
            tags=["contract"],
        ),
    ]
    for spec in specs:
        registry.register(spec)


_FOCUS_QUERIES: dict[str, str] = {
    "risk": "rischio penale risk penalty",
    "obligations": "obbligo obblighi obligation shall",
    "rights": "diritto diritti right rights",
    "payment": "pagamento corrispettivo fattura payment invoice",
    "termination": "risoluzione recesso termination",
    "liability": "responsabilità danni liability damages",
    "disputes": "controversie foro arbitrato dispute",
    "compliance": "conformità normativa compliance",
}


def _days_until(deadline: Any, today: date) -> int | None:
    if not deadline:
        return None
    try:
        return (datetime.fromisoformat(str(deadline)).date() - today).days
    except ValueError:
        return None
