"""Company profile: structured model and its decomposition into context chunks."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from src.models import ContextChunk, ContextSource

TextOrList = str | list[str]


class _ProfileModel(BaseModel):
    """Profile documents are stored camelCased; accept either spelling, ignore extras."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class MissionAndVision(_ProfileModel):
    mission_statement: str = ""
    vision_statement: str = ""


class PositioningStatement(_ProfileModel):
    target_segment: str = ""
    category: str = ""
    unique_benefit: str = ""
    reason_to_believe: str = ""


class BusinessModel(_ProfileModel):
    revenue_model: str = ""
    pricing_strategy: str = ""
    distribution_channels: TextOrList = ""


class CoreIdentity(_ProfileModel):
    company_overview: str = ""
    mission_and_vision: MissionAndVision | None = None
    core_values: list[str] = []
    positioning_statement: PositioningStatement | None = None
    business_model: BusinessModel | None = None


class IdealCustomerProfile(_ProfileModel):
    defining_traits: str = ""
    key_demographics: str = ""
    representative_persona: str = ""


class CustomerJourney(_ProfileModel):
    top_pain_points: TextOrList = ""
    top_improvement_opportunities: TextOrList = ""


class MarketAnalysis(_ProfileModel):
    primary_category_analysis: str = ""
    top_direct_competitors: TextOrList = ""


class CustomerAndMarket(_ProfileModel):
    ideal_customer_profile: IdealCustomerProfile | None = None
    customer_journey: CustomerJourney | None = None
    market_analysis: MarketAnalysis | None = None


class BrandVoiceDosAndDonts(_ProfileModel):
    dos: TextOrList = ""
    donts: TextOrList = ""


class BrandVoice(_ProfileModel):
    brand_purpose: str = ""
    brand_voice_dos_and_donts: BrandVoiceDosAndDonts | None = None


class CompanyProfile(_ProfileModel):
    """The single structured profile record a company owns."""

    core_identity_and_strategic_foundation: CoreIdentity | None = None
    customer_and_market_context: CustomerAndMarket | None = None
    brand_voice_and_expression: BrandVoice | None = None


def _text(value: TextOrList | None, sep: str = "\n") -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return sep.join(str(v).strip() for v in value if str(v).strip())
    return value.strip()


def _populated(*values: TextOrList | None) -> bool:
    return any(_text(v) for v in values)


def chunk_company_profile(profile: CompanyProfile | dict[str, Any]) -> list[ContextChunk]:
    """Split a profile into its fixed set of semantic chunks.

    Emits, in order and only when the underlying fields are populated:
    company overview, mission & vision, core values, positioning statement,
    business model, ideal customer profile, customer journey, market
    analysis, brand purpose, brand voice guidelines. Scores start at 0;
    the retriever assigns similarity.
    """
    if isinstance(profile, dict):
        profile = CompanyProfile.model_validate(profile)

    sections: list[tuple[str, str, str]] = []

    core = profile.core_identity_and_strategic_foundation
    if core is not None:
        if _populated(core.company_overview):
            sections.append(("Core Identity", "Company Overview", f"Company Overview: {core.company_overview.strip()}"))
        mv = core.mission_and_vision
        if mv is not None and _populated(mv.mission_statement, mv.vision_statement):
            sections.append((
                "Core Identity",
                "Mission & Vision",
                f"Mission: {mv.mission_statement.strip()}\nVision: {mv.vision_statement.strip()}",
            ))
        if _populated(core.core_values):
            sections.append(("Core Identity", "Core Values", f"Core Values:\n{_text(core.core_values)}"))
        ps = core.positioning_statement
        if ps is not None and _populated(ps.target_segment, ps.category, ps.unique_benefit, ps.reason_to_believe):
            sections.append((
                "Core Identity",
                "Positioning Statement",
                f"Positioning: For {ps.target_segment.strip()}, we are {ps.category.strip()}. "
                f"{ps.unique_benefit.strip()}. {ps.reason_to_believe.strip()}",
            ))
        bm = core.business_model
        if bm is not None and _populated(bm.revenue_model, bm.pricing_strategy, bm.distribution_channels):
            sections.append((
                "Core Identity",
                "Business Model",
                f"Business Model:\nRevenue: {bm.revenue_model.strip()}\n"
                f"Pricing: {bm.pricing_strategy.strip()}\n"
                f"Distribution: {_text(bm.distribution_channels, ', ')}",
            ))

    market = profile.customer_and_market_context
    if market is not None:
        icp = market.ideal_customer_profile
        if icp is not None and _populated(icp.defining_traits, icp.key_demographics, icp.representative_persona):
            sections.append((
                "Customer & Market",
                "Ideal Customer Profile",
                f"Ideal Customer Profile:\n{icp.defining_traits.strip()}\n\n"
                f"Demographics: {icp.key_demographics.strip()}\n\n"
                f"Persona: {icp.representative_persona.strip()}",
            ))
        journey = market.customer_journey
        if journey is not None and _populated(journey.top_pain_points, journey.top_improvement_opportunities):
            sections.append((
                "Customer & Market",
                "Customer Journey",
                f"Customer Pain Points:\n{_text(journey.top_pain_points)}\n\n"
                f"Improvement Opportunities:\n{_text(journey.top_improvement_opportunities)}",
            ))
        analysis = market.market_analysis
        if analysis is not None and _populated(analysis.primary_category_analysis, analysis.top_direct_competitors):
            sections.append((
                "Customer & Market",
                "Market Analysis",
                f"Market Analysis:\n{analysis.primary_category_analysis.strip()}\n\n"
                f"Competitors:\n{_text(analysis.top_direct_competitors)}",
            ))

    brand = profile.brand_voice_and_expression
    if brand is not None:
        if _populated(brand.brand_purpose):
            sections.append(("Brand Voice", "Brand Purpose", f"Brand Purpose: {brand.brand_purpose.strip()}"))
        rules = brand.brand_voice_dos_and_donts
        if rules is not None and _populated(rules.dos, rules.donts):
            sections.append((
                "Brand Voice",
                "Brand Voice Guidelines",
                f"Brand Voice Guidelines:\n\nDO:\n{_text(rules.dos)}\n\nDON'T:\n{_text(rules.donts)}",
            ))

    return [
        ContextChunk(
            id=f"cp_{i}",
            content=content,
            source=ContextSource.COMPANY_PROFILE,
            source_detail=detail,
            score=0.0,
            metadata={"section": section},
        )
        for i, (section, detail, content) in enumerate(sections)
    ]
