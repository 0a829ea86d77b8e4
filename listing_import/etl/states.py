"""Static US state lookup data used during normalization."""

from typing import Dict, Mapping, Optional, Tuple

US_STATES: Dict[str, str] = {
    "AL": "Alabama", "AK": "Alaska", "AZ": "Arizona", "AR": "Arkansas",
    "CA": "California", "CO": "Colorado", "CT": "Connecticut", "DE": "Delaware",
    "FL": "Florida", "GA": "Georgia", "HI": "Hawaii", "ID": "Idaho",
    "IL": "Illinois", "IN": "Indiana", "IA": "Iowa", "KS": "Kansas",
    "KY": "Kentucky", "LA": "Louisiana", "ME": "Maine", "MD": "Maryland",
    "MA": "Massachusetts", "MI": "Michigan", "MN": "Minnesota", "MS": "Mississippi",
    "MO": "Missouri", "MT": "Montana", "NE": "Nebraska", "NV": "Nevada",
    "NH": "New Hampshire", "NJ": "New Jersey", "NM": "New Mexico", "NY": "New York",
    "NC": "North Carolina", "ND": "North Dakota", "OH": "Ohio", "OK": "Oklahoma",
    "OR": "Oregon", "PA": "Pennsylvania", "RI": "Rhode Island", "SC": "South Carolina",
    "SD": "South Dakota", "TN": "Tennessee", "TX": "Texas", "UT": "Utah",
    "VT": "Vermont", "VA": "Virginia", "WA": "Washington", "WV": "West Virginia",
    "WI": "Wisconsin", "WY": "Wyoming", "DC": "District of Columbia",
    "PR": "Puerto Rico", "GU": "Guam", "VI": "U.S. Virgin Islands",
}


class StateLookup:
    """Bidirectional abbreviation <-> full name table."""

    def __init__(self, states: Optional[Mapping[str, str]] = None) -> None:
        table = states if states is not None else US_STATES
        self._by_abbr = {abbr.upper(): name for abbr, name in table.items()}
        self._by_name = {name.lower(): abbr.upper() for abbr, name in table.items()}

    def resolve(self, value: Optional[str]) -> Tuple[str, str]:
        """Return ``(abbr, full_name)``; unknown values pass through unchanged."""
        cleaned = " ".join((value or "").split())
        if not cleaned:
            return "", ""
        upper = cleaned.upper()
        if upper in self._by_abbr:
            return upper, self._by_abbr[upper]
        abbr = self._by_name.get(cleaned.lower())
        if abbr:
            return abbr, self._by_abbr[abbr]
        return cleaned, cleaned
