"""Provider record → NormalizedGrant mappings.

Every function here is total: malformed amounts fall back to zero, malformed
or missing dates fall back to an open-ended deadline, and missing text stays
``None``. Only a missing external id is left for the caller to reject.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any, Mapping

from grantsync.normalize.categories import (
    category_from_state_portal,
    infer_category,
)
from grantsync.normalize.parsing import (
    clamp_funding_range,
    clean_text,
    coerce_amount,
    default_deadline,
    parse_funding_range,
    resolve_deadline,
    string_or_none,
)
from grantsync.normalize.schema import GrantCategory, GrantSourceType, NormalizedGrant, Requirements

FOUNDATION_OPEN_ENDED_DAYS = 2 * 365
FOUNDATION_PAYOUT_RATE = 0.05
FOUNDATION_TYPICAL_MIN_GRANT = 1000.0
NSF_EDUCATION_CFDA = "47.076"

_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def _nested(obj: Any, *keys: str) -> Any:
    current: Any = obj
    for key in keys:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _first_cfda(cfda_list: Any) -> str | None:
    for entry in _as_list(cfda_list):
        if isinstance(entry, Mapping):
            number = string_or_none(entry.get("cfdaNumber") or entry.get("assistance_listing_number"))
        else:
            number = string_or_none(entry)
        if number:
            return number
    return None


def _resolve_now(now: datetime | None) -> datetime:
    return now or datetime.now(tz=UTC)


def grants_gov_url(opportunity_id: str) -> str:
    if _UUID_PATTERN.match(opportunity_id):
        return f"https://simpler.grants.gov/opportunity/{opportunity_id}"
    return f"https://www.grants.gov/search-results-detail/{opportunity_id}"


def normalize_grants_gov_opportunity(
    opp: Mapping[str, Any],
    *,
    now: datetime | None = None,
) -> NormalizedGrant:
    reference = _resolve_now(now)
    external_id = string_or_none(opp.get("opportunityId")) or ""
    title = clean_text(opp.get("opportunityTitle")) or (f"Opportunity {external_id}" if external_id else "")
    description = clean_text(_nested(opp, "synopsis", "synopsisDesc"))
    cfda = _first_cfda(opp.get("cfdaList"))

    category = infer_category(
        cfda,
        title,
        description,
        string_or_none(opp.get("categoryOfFunding")),
    )

    funding_min = coerce_amount(opp.get("awardFloor"))
    funding_max = (
        coerce_amount(opp.get("awardCeiling"))
        or coerce_amount(opp.get("estimatedTotalProgramFunding"))
        or funding_min
    )
    funding_min, funding_max = clamp_funding_range(funding_min, funding_max)

    deadline, open_ended = resolve_deadline(opp.get("closeDate"), now=reference)

    eligible_applicants = [str(item) for item in _as_list(opp.get("eligibleApplicants")) if item]
    eligibility_parts = [
        *eligible_applicants,
        clean_text(opp.get("additionalEligibilityInfo")),
        clean_text(_nested(opp, "synopsis", "applicantEligibilityDesc")),
    ]
    eligibility = "\n".join(part for part in eligibility_parts if part) or None

    url = grants_gov_url(external_id) if external_id else None
    status = str(opp.get("oppStatus") or "posted").strip().lower()

    return NormalizedGrant(
        title=title,
        category=category,
        source_type=GrantSourceType.FEDERAL,
        funding_amount_min=funding_min,
        funding_amount_max=funding_max,
        deadline=deadline,
        external_id=external_id,
        source_url=url,
        application_url=url,
        cfda=cfda,
        agency_code=string_or_none(opp.get("agencyCode") or opp.get("owningAgencyCode")),
        description=description,
        eligibility_criteria=eligibility,
        requirements=Requirements(
            {
                "opportunityNumber": string_or_none(opp.get("opportunityNumber")),
                "eligibleApplicants": eligible_applicants,
                "fundingInstrumentType": string_or_none(opp.get("fundingInstrumentType")),
                "categoryOfFunding": string_or_none(opp.get("categoryOfFunding")),
                "costSharing": opp.get("costSharing"),
                "expectedNumberOfAwards": opp.get("expectedNumberOfAwards"),
                "cfdaList": _as_list(opp.get("cfdaList")),
                "partialRecord": bool(opp.get("_partial", False)),
            }
        ),
        is_active=status == "posted",
        open_ended=open_ended,
    )


def normalize_california_grant(
    row: Mapping[str, Any],
    *,
    now: datetime | None = None,
) -> NormalizedGrant:
    reference = _resolve_now(now)
    external_id = string_or_none(row.get("GrantID")) or ""
    title = clean_text(row.get("GrantTitle")) or (f"California grant {external_id}" if external_id else "")
    description = clean_text(row.get("Description"))
    categories = string_or_none(row.get("Categories"))

    funding_min, funding_max = parse_funding_range(row.get("EstAvailFunds"))
    category = category_from_state_portal(categories, title, description)
    deadline, open_ended = resolve_deadline(row.get("ApplicationDeadline"), now=reference)
    url = string_or_none(row.get("GrantURL"))

    return NormalizedGrant(
        title=title,
        category=category,
        source_type=GrantSourceType.STATE,
        funding_amount_min=funding_min,
        funding_amount_max=funding_max,
        deadline=deadline,
        external_id=external_id,
        source_url=url,
        application_url=url,
        cfda=None,
        agency_code=string_or_none(row.get("AgencyDept")),
        description=description,
        eligibility_criteria=clean_text(row.get("EligibleApplicants")),
        requirements=Requirements(
            {
                "geographicEligibility": string_or_none(row.get("GeographicEligibility")),
                "matchingFundsRequired": str(row.get("MatchingFundsRequired") or "").strip().lower() == "yes",
                "categories": [part.strip() for part in (categories or "").split(",") if part.strip()],
                "openDate": string_or_none(row.get("OpenDate")),
            }
        ),
        is_active=True,
        open_ended=open_ended,
    )


def normalize_usaspending_award(
    award: Mapping[str, Any],
    *,
    now: datetime | None = None,
) -> NormalizedGrant:
    reference = _resolve_now(now)
    external_id = string_or_none(award.get("Award ID")) or ""
    cfda = string_or_none(award.get("CFDA Number"))
    recipient = clean_text(award.get("Recipient Name")) or "Unknown recipient"
    description = clean_text(award.get("Description"))

    category = infer_category(cfda, description) if cfda else GrantCategory.FEDERAL
    amount = coerce_amount(award.get("Award Amount"))
    deadline, open_ended = resolve_deadline(award.get("End Date"), now=reference)
    url_slug = string_or_none(award.get("generated_internal_id")) or external_id

    return NormalizedGrant(
        title=f"{recipient} - {cfda or 'Federal Award'}",
        category=category,
        source_type=GrantSourceType.FEDERAL,
        funding_amount_min=amount,
        funding_amount_max=amount,
        deadline=deadline,
        external_id=external_id,
        source_url=f"https://www.usaspending.gov/award/{url_slug}" if url_slug else None,
        application_url=None,
        cfda=cfda,
        agency_code=string_or_none(award.get("Awarding Agency")),
        description=description,
        eligibility_criteria=None,
        requirements=Requirements(
            {
                "awardType": string_or_none(award.get("Award Type")),
                "subAgency": string_or_none(award.get("Awarding Sub Agency")),
                "totalOutlays": award.get("Total Outlays"),
                "recipientName": recipient,
                "startDate": string_or_none(award.get("Start Date")),
            }
        ),
        # Historical awards are reference data, never open opportunities.
        is_active=False,
        open_ended=open_ended,
    )


def normalize_nsf_award(
    award: Mapping[str, Any],
    *,
    now: datetime | None = None,
) -> NormalizedGrant:
    reference = _resolve_now(now)
    external_id = string_or_none(award.get("id")) or ""
    amount = coerce_amount(award.get("estimatedTotalAmt"))
    deadline, open_ended = resolve_deadline(award.get("expDate"), now=reference)
    pi_name = " ".join(part for part in (award.get("piFirstName"), award.get("piLastName")) if part)
    location = ", ".join(
        part for part in (award.get("awardeeCity"), award.get("awardeeStateCode")) if part
    )

    return NormalizedGrant(
        title=clean_text(award.get("title")) or (f"NSF award {external_id}" if external_id else ""),
        category=GrantCategory.STEM,
        source_type=GrantSourceType.FEDERAL,
        funding_amount_min=amount,
        funding_amount_max=amount,
        deadline=deadline,
        external_id=external_id,
        source_url=(
            f"https://www.nsf.gov/awardsearch/showAward?AWD_ID={external_id}" if external_id else None
        ),
        application_url=None,
        cfda=NSF_EDUCATION_CFDA,
        agency_code="NSF",
        description=clean_text(award.get("abstractText")),
        eligibility_criteria=None,
        requirements=Requirements(
            {
                "awardee": string_or_none(award.get("awardeeName")),
                "awardeeLocation": location or None,
                "principalInvestigator": pi_name or None,
                "piEmail": string_or_none(award.get("piEmail")),
                "programName": string_or_none(award.get("fundProgramName") or award.get("primaryProgram")),
            }
        ),
        is_active=open_ended or deadline > reference,
        open_ended=open_ended,
    )


def normalize_propublica_foundation(
    org: Mapping[str, Any],
    *,
    now: datetime | None = None,
) -> NormalizedGrant:
    reference = _resolve_now(now)
    external_id = string_or_none(org.get("ein")) or ""
    avg_giving = coerce_amount(org.get("avg_annual_giving"))
    asset_amount = coerce_amount(org.get("asset_amount"))
    income_amount = coerce_amount(org.get("income_amount"))

    # Without filing data, estimate capacity from the typical payout rate.
    estimated_giving = avg_giving or round(asset_amount * FOUNDATION_PAYOUT_RATE) or income_amount
    funding_min = min(FOUNDATION_TYPICAL_MIN_GRANT, estimated_giving) if estimated_giving > 0 else 0.0
    funding_min, funding_max = clamp_funding_range(funding_min, float(estimated_giving))

    city = string_or_none(org.get("city")) or "Unknown city"
    state = string_or_none(org.get("state")) or "Unknown state"
    ntee_code = string_or_none(org.get("ntee_code"))

    return NormalizedGrant(
        title=clean_text(org.get("name")) or (f"Foundation {external_id}" if external_id else ""),
        category=GrantCategory.PRIVATE_FOUNDATION,
        source_type=GrantSourceType.PRIVATE_FOUNDATION,
        funding_amount_min=funding_min,
        funding_amount_max=funding_max,
        deadline=default_deadline(reference, days=FOUNDATION_OPEN_ENDED_DAYS),
        external_id=external_id,
        source_url=(
            f"https://projects.propublica.org/nonprofits/organizations/{external_id}" if external_id else None
        ),
        application_url=None,
        cfda=None,
        agency_code=None,
        description=f"Private foundation based in {city}, {state}. NTEE Code: {ntee_code or 'Unknown'}",
        eligibility_criteria=None,
        requirements=Requirements(
            {
                "nteeCode": ntee_code,
                "assets": org.get("asset_amount"),
                "annualRevenue": org.get("revenue_amount"),
            }
        ),
        is_active=True,
        open_ended=True,
    )


def normalize_sam_assistance_listing(
    listing: Mapping[str, Any],
    *,
    now: datetime | None = None,
) -> NormalizedGrant:
    reference = _resolve_now(now)
    external_id = string_or_none(listing.get("assistanceListingNumber")) or ""
    title = clean_text(listing.get("programTitle")) or (f"Assistance listing {external_id}" if external_id else "")
    objectives = clean_text(listing.get("objectives"))

    category = infer_category(external_id or None, title, objectives)
    obligations = [
        entry for entry in _as_list(listing.get("obligations")) if isinstance(entry, Mapping)
    ]
    latest = max(obligations, key=lambda entry: coerce_amount(entry.get("fiscalYear")), default=None)
    funding_max = coerce_amount(latest.get("amount")) if latest else 0.0
    deadline, open_ended = resolve_deadline(listing.get("deadlines"), now=reference)
    url = string_or_none(listing.get("website")) or (
        f"https://sam.gov/fal/{external_id}/view" if external_id else None
    )

    return NormalizedGrant(
        title=title,
        category=category,
        source_type=GrantSourceType.FEDERAL,
        funding_amount_min=0.0,
        funding_amount_max=funding_max,
        deadline=deadline,
        external_id=external_id,
        source_url=url,
        application_url=url,
        cfda=external_id or None,
        agency_code=string_or_none(listing.get("federalAgency")),
        description=objectives,
        eligibility_criteria=clean_text(listing.get("applicantEligibility")),
        requirements=Requirements(
            {
                "popularName": string_or_none(listing.get("popularName")),
                "typesOfAssistance": _as_list(listing.get("typesOfAssistance")),
                "beneficiaryEligibility": clean_text(listing.get("beneficiaryEligibility")),
                "applicationProcedures": clean_text(listing.get("applicationProcedures")),
                "deadlines": clean_text(listing.get("deadlines")),
                "latestObligationYear": latest.get("fiscalYear") if latest else None,
            }
        ),
        is_active=True,
        open_ended=open_ended,
    )
