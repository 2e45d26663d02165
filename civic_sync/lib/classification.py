"""
Contributor classification from FEC employer/occupation strings.

Both classifiers are ordered rule tables evaluated top to bottom; the first
rule whose keyword appears in its fields wins. Reordering rules changes
results (e.g. "Retired" is checked before "Education" so a retired teacher
lands in Retired).
"""

from dataclasses import dataclass
from typing import Optional, Tuple

INDIVIDUAL = "individual"
CORPORATE = "corporate"
PAC = "pac"
UNION = "union"


@dataclass(frozen=True)
class Rule:
    """A category assigned when any keyword occurs in any listed field.

    `fields` names "employer", "occupation" or "combined" (both joined).
    """

    category: str
    fields: Tuple[str, ...]
    keywords: Tuple[str, ...]

    def matches(self, employer: str, occupation: str) -> bool:
        values = {
            "employer": employer,
            "occupation": occupation,
            "combined": f"{employer} {occupation}",
        }
        return any(
            keyword in values[name] for name in self.fields for keyword in self.keywords
        )


CONTRIBUTOR_TYPE_RULES: Tuple[Rule, ...] = (
    Rule(INDIVIDUAL, ("employer",), ("self", "retired")),
    Rule(INDIVIDUAL, ("occupation",), ("retired",)),
    Rule(CORPORATE, ("employer",), ("llc", "inc", "corp", "co.")),
    Rule(PAC, ("employer",), ("pac", "committee", "political")),
    Rule(UNION, ("employer",), ("union", "workers", "labor")),
)

INDUSTRY_RULES: Tuple[Rule, ...] = (
    Rule("Legal", ("combined",), ("law", "attorney", "legal")),
    Rule("Real Estate", ("combined",), ("real estate", "realtor", "property")),
    Rule("Healthcare", ("combined",), ("health", "medical", "doctor", "hospital")),
    Rule(
        "Finance & Insurance",
        ("combined",),
        ("bank", "financial", "investment", "insurance"),
    ),
    Rule("Technology", ("combined",), ("tech", "software", "computer", "engineer")),
    Rule("Energy", ("combined",), ("oil", "gas", "energy", "utility")),
    Rule("Construction", ("combined",), ("construction", "builder", "contractor")),
    Rule("Retired", ("combined",), ("retired",)),
    Rule(
        "Education",
        ("combined",),
        ("education", "teacher", "professor", "university"),
    ),
)


def _first_match(
    rules: Tuple[Rule, ...], employer: Optional[str], occupation: Optional[str]
) -> Optional[str]:
    emp = (employer or "").lower()
    occ = (occupation or "").lower()
    for rule in rules:
        if rule.matches(emp, occ):
            return rule.category
    return None


def classify_contributor(employer: Optional[str], occupation: Optional[str]) -> str:
    """Contributor type: individual, corporate, pac or union."""
    return _first_match(CONTRIBUTOR_TYPE_RULES, employer, occupation) or INDIVIDUAL


def infer_industry(employer: Optional[str], occupation: Optional[str]) -> Optional[str]:
    """Industry label, or None when no rule applies."""
    return _first_match(INDUSTRY_RULES, employer, occupation)
