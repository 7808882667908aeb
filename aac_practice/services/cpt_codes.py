# aac_practice/services/cpt_codes.py
"""Static CPT reference data used for pricing sessions and claims."""
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class CPTCode:
    code: str
    description: str
    category: str  # SLP, OT, PT
    medicare_rate: Decimal
    medicaid_rate: Decimal
    duration: int  # minutes per billable unit
    modifiers: Tuple[str, ...] = ()


CPT_CODES: Dict[str, CPTCode] = {
    c.code: c for c in (
        CPTCode("92507", "Treatment of speech, language, voice, communication, and/or auditory processing disorder; individual",
                "SLP", Decimal("85.50"), Decimal("78.25"), 15, ("59", "GP", "GN")),
        CPTCode("92508", "Treatment of speech, language, voice, communication, and/or auditory processing disorder; group",
                "SLP", Decimal("42.75"), Decimal("39.10"), 15, ("59", "GP", "GN")),
        CPTCode("92523", "Evaluation of speech sound production with evaluation of language comprehension and expression",
                "SLP", Decimal("182.20"), Decimal("145.76"), 60, ("GN",)),
        CPTCode("92609", "Therapeutic services for the use of speech-generating device (AAC device training)",
                "SLP", Decimal("95.75"), Decimal("87.65"), 15, ("GN", "KX")),
        CPTCode("97165", "Occupational therapy evaluation, low complexity",
                "OT", Decimal("92.33"), Decimal("84.50"), 30, ("GP", "GO")),
        CPTCode("97166", "Occupational therapy evaluation, moderate complexity",
                "OT", Decimal("137.84"), Decimal("126.25"), 45, ("GP", "GO")),
        CPTCode("97167", "Occupational therapy evaluation, high complexity",
                "OT", Decimal("171.64"), Decimal("157.10"), 60, ("GP", "GO")),
        CPTCode("97168", "Re-evaluation of occupational therapy established plan of care",
                "OT", Decimal("79.37"), Decimal("72.65"), 30, ("GP", "GO")),
        CPTCode("97530", "Therapeutic activities, direct patient contact",
                "PT", Decimal("68.25"), Decimal("62.45"), 15, ("GP", "GO")),
    )
}


def get_cpt_code(code: str) -> Optional[CPTCode]:
    return CPT_CODES.get(code)
