"""
Address normalization for Malaysian party addresses.

Spreadsheets often carry the whole street address in one cell and free-text
state names; the authority expects separate address lines and the official
two-digit state codes.
"""
import re
from typing import Any, Optional

STATE_NAME_TO_CODE = {
    "JOHOR": "01",
    "KEDAH": "02",
    "KELANTAN": "03",
    "MELAKA": "04",
    "MELACCA": "04",
    "NEGERI SEMBILAN": "05",
    "PAHANG": "06",
    "PULAU PINANG": "07",
    "PENANG": "07",
    "PERAK": "08",
    "PERLIS": "09",
    "SELANGOR": "10",
    "TERENGGANU": "11",
    "SABAH": "12",
    "SARAWAK": "13",
    "WILAYAH PERSEKUTUAN KUALA LUMPUR": "14",
    "WP KUALA LUMPUR": "14",
    "W.P. KUALA LUMPUR": "14",
    "KUALA LUMPUR": "14",
    "WILAYAH PERSEKUTUAN LABUAN": "15",
    "WP LABUAN": "15",
    "W.P. LABUAN": "15",
    "LABUAN": "15",
    "WILAYAH PERSEKUTUAN PUTRAJAYA": "16",
    "WP PUTRAJAYA": "16",
    "W.P. PUTRAJAYA": "16",
    "PUTRAJAYA": "16",
    "NOT APPLICABLE": "17",
    "N/A": "17",
    "NA": "17",
}

# Federal territory names are matched anywhere in the input.
STATE_KEYWORD_CODES = (
    ("KUALA LUMPUR", "14"),
    ("LABUAN", "15"),
    ("PUTRAJAYA", "16"),
)

STREET_TOKEN_SPLIT = re.compile(
    r"\s+(?=\d+[A-Za-z]|\d+,|Jalan|Taman|Persiaran|Lorong|Kampung|Kg\.|Bandar|Street|Road|Lane|"
    r"Avenue|Block|Unit|Floor|Level|Plaza|Tower|Building|Complex|Park|Garden|Heights|Court|"
    r"Apartment|Suite|Room|House|No\.|No\s+\d+)",
    re.IGNORECASE,
)
COUNTRY_LINE = re.compile(r"^(MYS|Malaysia|SGP|Singapore)$", re.IGNORECASE)
NUMBERED_PREFIX_LINE = re.compile(r"^(PLO|No\.|Block|Unit|Floor|Level)\s+\d+$", re.IGNORECASE)


def to_state_code(state: Any) -> Optional[str]:
    """Resolve a state name or number to its two-digit code."""
    if state is None:
        return None

    raw = str(state).strip()
    if not raw:
        return None

    if re.fullmatch(r"\d{1,2}", raw):
        numeric = int(raw)
        if 1 <= numeric <= 17:
            return f"{numeric:02d}"
        return None

    normalized = re.sub(r"\s+", " ", raw.upper()).rstrip(".")
    if normalized in STATE_NAME_TO_CODE:
        return STATE_NAME_TO_CODE[normalized]

    for keyword, code in STATE_KEYWORD_CODES:
        if keyword in normalized:
            return code
    return None


def split_address_lines(line: Any) -> list[str]:
    """
    Break a raw address into address lines.

    Commas and line breaks separate lines. A single run-on line is split
    before common street tokens (Jalan, Taman, Block, unit numbers and so
    on). Repeated country names and duplicate lines are removed, and bare
    numbered prefixes such as ``No. 12`` get a trailing comma.
    """
    if line is None:
        return []

    address = str(line)
    if not address:
        return []
    if address.strip().lower() == "na" or not address.strip():
        return ["NA"]

    lines = [part.strip() for part in re.split(r"[,\n]", address) if part.strip()]

    if len(lines) == 1 and STREET_TOKEN_SPLIT.search(address):
        lines = [part.strip() for part in STREET_TOKEN_SPLIT.split(address) if part.strip()]

    seen_country = False
    unique_lines: list[str] = []
    for entry in lines:
        if COUNTRY_LINE.match(entry):
            if seen_country:
                continue
            seen_country = True
        if entry not in unique_lines:
            unique_lines.append(entry)

    return [
        f"{entry}," if NUMBERED_PREFIX_LINE.match(entry) else entry
        for entry in unique_lines
    ]
