# eotracker/classify.py
# --- Keyword tagging of presidential actions by policy area and agency ---
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Pattern, Tuple

CATEGORY_KEYWORDS: Dict[str, List[str]] = {
    "Education": ["education", "school", "student", "learning", "academic", "curriculum",
                  "classroom", "college", "university"],
    "Military": ["military", "defense", "veteran", "armed forces", "national security",
                 "servicemember", "combat", "pentagon"],
    "Economy": ["economy", "economic", "financial", "treasury", "fiscal", "trade", "commerce",
                "market", "banking", "finance"],
    "Healthcare": ["health", "medical", "healthcare", "hospital", "patient", "medicare",
                   "medicaid", "treatment", "insurance"],
    "Environment": ["environment", "climate", "energy", "pollution", "environmental",
                    "conservation", "renewable", "sustainability"],
    "Immigration": ["immigration", "border", "visa", "asylum", "migrant", "customs",
                    "refugee", "migration"],
    "Technology": ["technology", "cyber", "digital", "internet", "cybersecurity", "innovation",
                   "tech", "data", "privacy"],
    "Foreign Policy": ["foreign", "international", "diplomatic", "embassy", "bilateral",
                       "multilateral", "treaty", "global"],
    "Civil Rights": ["civil rights", "discrimination", "equality", "justice", "constitutional",
                     "voting rights", "civil liberties"],
    "Infrastructure": ["infrastructure", "transportation", "construction", "public works",
                       "development", "roads", "bridges"],
    "National Security": ["security", "intelligence", "homeland", "counterterrorism", "defense",
                          "threat", "protection"],
    "Labor": ["labor", "employment", "workforce", "worker", "union", "workplace", "job",
              "wage", "compensation"],
}

AGENCY_KEYWORDS: Dict[str, List[str]] = {
    "Department of Education": ["department of education", "education department", "ed.gov",
                                "secretary of education"],
    "Department of Defense": ["department of defense", "defense department", "pentagon", "dod",
                              "secretary of defense"],
    "Department of State": ["department of state", "state department", "diplomatic", "state.gov",
                            "secretary of state"],
    "Department of Treasury": ["department of treasury", "department of the treasury",
                               "treasury department", "treasury.gov", "secretary of treasury",
                               "secretary of the treasury"],
    "Department of Homeland Security": ["department of homeland security", "dhs",
                                        "homeland security", "secretary of homeland"],
    "Department of Justice": ["department of justice", "justice department", "doj", "justice.gov",
                              "attorney general"],
    "Department of Labor": ["department of labor", "labor department", "dol", "labor.gov",
                            "secretary of labor"],
    "Department of Energy": ["department of energy", "energy department", "doe", "energy.gov",
                             "secretary of energy"],
    "Department of Health and Human Services": ["department of health and human services", "hhs",
                                                "health and human services"],
    "Environmental Protection Agency": ["environmental protection agency", "epa", "epa.gov",
                                        "administrator of the epa"],
    "Department of Transportation": ["department of transportation", "transportation department",
                                     "dot", "transportation.gov"],
    "Department of Veterans Affairs": ["department of veterans affairs", "va", "veterans affairs",
                                       "va.gov", "secretary of veterans"],
}


def _compile(table: Dict[str, List[str]]) -> List[Tuple[str, Pattern[str]]]:
    out: List[Tuple[str, Pattern[str]]] = []
    for label, keywords in table.items():
        alts = "|".join(re.escape(k.lower()) for k in keywords)
        out.append((label, re.compile(rf"\b(?:{alts})\b")))
    return out


_CATEGORY_PATTERNS = _compile(CATEGORY_KEYWORDS)
_AGENCY_PATTERNS = _compile(AGENCY_KEYWORDS)


def _match(text: Optional[str], patterns: List[Tuple[str, Pattern[str]]]) -> List[str]:
    if not text:
        return []
    lowered = str(text).lower()
    return [label for label, pat in patterns if pat.search(lowered)]


def determine_categories(text: Optional[str]) -> List[str]:
    return _match(text, _CATEGORY_PATTERNS)


def determine_agencies(text: Optional[str]) -> List[str]:
    return _match(text, _AGENCY_PATTERNS)


@dataclass(frozen=True)
class Classification:
    categories: List[str] = field(default_factory=list)
    agencies: List[str] = field(default_factory=list)


def classify(text: Optional[str]) -> Classification:
    return Classification(determine_categories(text), determine_agencies(text))
