"""
Logbook landing coverage library.

Matches a ForeFlight logbook export against a catalog of US landing
facilities and derives coverage statistics from the matches:
  - identifier normalization and coordinate-token recognition
  - logbook parsing (the Flights Table inside a multi-table CSV export)
  - facility catalog loading (prebuilt facilities_master.csv, OurAirports)
  - endpoint, notes and nearest-coordinate matching
  - coverage, frequency, first-visit and trip-planning views

This module has no main(); see landings_study.py, trip_planner.py.
"""

import csv
import io
import math
import re
from dataclasses import dataclass, field, replace
from pathlib import Path

import numpy as np
import pandas as pd
import requests


# =============================================================================
# Constants
# =============================================================================

EARTH_RADIUS_NM = 3440.065    # nautical miles
NM_PER_DEG_LAT = EARTH_RADIUS_NM * math.pi / 180.0
COORDINATE_MATCH_MAX_NM = 10  # raw coordinate endpoints snap to a facility this close
USABLE_RUNWAY_FRACTION = 0.75  # planning margin applied to published runway length

# Large hubs left out of "have you landed here" coverage when requested.
HUB_EXCLUSIONS = frozenset({"SFO", "LAX", "SAN"})

SCOPES = ("public", "private", "heliport", "seaplane", "all")
PRIVATE_TYPES = frozenset({"small_airport", "medium_airport", "large_airport"})
HELIPORT_TYPE = "heliport"
SEAPLANE_TYPE = "seaplane_base"

SURFACE_CATEGORIES = ("paved", "unpaved", "water", "unknown")

ENDPOINT_FROM = "endpoint_from"
ENDPOINT_TO = "endpoint_to"
NOTES_MATCH = "notes_match"
MATCH_SOURCES = (ENDPOINT_FROM, ENDPOINT_TO, NOTES_MATCH)

NO_FLIGHTS_TABLE = "No Flights Table found."
BLANK_ROWS_END_TABLE = 3
CSV_FIELD_SIZE_LIMIT = 2**31 - 1

AIRPORTS_CSV_URL = (
    "https://davidmegginson.github.io/ourairports-data/airports.csv"
)


# =============================================================================
# Data Types
# =============================================================================

@dataclass(frozen=True)
class Facility:
    """A landing facility from the catalog.

    Loaded once per session and shared read-only. Coordinates, tower status,
    runway length and surface are None when the source data lacked them.
    """
    id: str
    name: str
    city: str = ""
    county: str = ""
    state: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    towered: bool | None = None
    longest_runway_ft: int | None = None
    surface_category: str | None = None
    type: str | None = None
    sources: str | None = None
    corroborated: str | None = None
    source: str = "public"

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass
class FlightRow:
    """One logged flight leg, with endpoints exactly as they appear in the export."""
    date: str
    origin: str
    destination: str
    text_fields: list[str] = field(default_factory=list)


@dataclass
class LogbookParseResult:
    flights: list[FlightRow]
    error: str | None = None


@dataclass
class MatchCounts:
    """Independent evidence counters for one facility."""
    endpoint_from: int = 0
    endpoint_to: int = 0
    notes_match: int = 0

    def selected(self, options: "MatchOptions") -> "MatchCounts":
        """Copy with every counter not selected by options zeroed out."""
        sources = options.sources
        return MatchCounts(**{s: (getattr(self, s) if s in sources else 0)
                              for s in MATCH_SOURCES})

    @property
    def total(self) -> int:
        return self.endpoint_from + self.endpoint_to + self.notes_match


@dataclass
class FacilityMatch:
    id: str
    counts: MatchCounts = field(default_factory=MatchCounts)


@dataclass(frozen=True)
class MatchOptions:
    """Which kinds of evidence count as a landing.

    include_notes: identifiers found in remarks/route/notes fields count.
    use_endpoints: the From/To columns count.
    arrivals_only: of the endpoints, only To counts.
    """
    include_notes: bool = True
    use_endpoints: bool = True
    arrivals_only: bool = False

    @property
    def sources(self) -> tuple[str, ...]:
        selected: list[str] = []
        if self.use_endpoints:
            if not self.arrivals_only:
                selected.append(ENDPOINT_FROM)
            selected.append(ENDPOINT_TO)
        if self.include_notes:
            selected.append(NOTES_MATCH)
        return tuple(selected)


@dataclass
class Frequency:
    total: int
    counts: MatchCounts


@dataclass(frozen=True)
class Coverage:
    total: int
    visited: int

    @property
    def ratio(self) -> float:
        return self.visited / self.total if self.total > 0 else 0.0


@dataclass(frozen=True)
class TripCandidate:
    facility: Facility
    distance_nm: float
    usable_runway_ft: float | None


# =============================================================================
# Identifier Normalization
# =============================================================================

_EDGE_JUNK_RE = re.compile(r"^[^A-Z0-9]+|[^A-Z0-9]+$")
_US_ICAO_RE = re.compile(r"^K[A-Z0-9]{3,4}$")

_COORD_PATTERNS = (
    re.compile(r"[NS]\d|\d[NS]"),
    re.compile(r"[EW]\d|\d[EW]"),
)
_COORD_FULL_PATTERNS = (
    re.compile(r"[-+]?\d{1,3}\.\d+[NS]?"),
    re.compile(r"[-+]?\d{1,3}\.\d+[,/][-+]?\d{1,3}\.\d+"),
    re.compile(r"[NS]\d{1,2}\.\d+[/,][EW]\d{1,3}\.\d+", re.IGNORECASE),
)

_TOKEN_SPLIT_RE = re.compile(r"[\s,;()\[\]{}<>/\\|]+|--?|_")

_HEMI_COORD_RE = re.compile(
    r"^(\d{1,2}(?:\.\d+)?)\s*°?\s*([NS])\s*[/,]\s*"
    r"(\d{1,3}(?:\.\d+)?)\s*°?\s*([EW])$",
    re.IGNORECASE,
)
_SIGNED_COORD_RE = re.compile(
    r"^([-+]?\d{1,2}(?:\.\d+)?)\s*[,/]\s*([-+]?\d{1,3}(?:\.\d+)?)$"
)


def normalize_facility_id(token: str) -> str:
    """Canonicalize a free-text token into a facility identifier.

    Uppercases, strips non-alphanumerics from both edges (interior
    punctuation is kept), and reduces US ICAO codes to the FAA identifier:
    'KSFO' -> 'SFO', '(lax)' -> 'LAX'. Only 'K' followed by 3-4
    alphanumerics is reduced, so 5-letter bodies are left alone.
    """
    cleaned = _EDGE_JUNK_RE.sub("", token.strip().upper())
    # Repeat so that normalizing an already normalized id is a no-op
    while _US_ICAO_RE.match(cleaned):
        cleaned = cleaned[1:]
    return cleaned


def is_coordinate_token(token: str) -> bool:
    """Return True if the token looks like a lat/lon fragment, not an identifier.

    Examples: '37.5N/122.2W', '122.2W', '37.6188°N'. 'L54' is not.
    """
    trimmed = token.strip()
    if not trimmed:
        return False
    if "°" in trimmed:
        return True
    if any(p.search(trimmed) for p in _COORD_PATTERNS):
        return True
    return any(p.fullmatch(trimmed) for p in _COORD_FULL_PATTERNS)


def tokenize_text(text: str) -> list[str]:
    """Split a notes/route field into candidate identifier tokens, in order."""
    tokens = (t.strip() for t in _TOKEN_SPLIT_RE.split(text))
    return [t for t in tokens if t]


def parse_coordinate(value: str) -> tuple[float, float] | None:
    """Parse a raw endpoint like '37.6188056°N/122.3754167°W' or '37.6,-122.3'.

    Returns (lat, lon) in decimal degrees, or None if the string is not a
    coordinate or is out of range.
    """
    trimmed = value.strip()
    if not trimmed:
        return None

    m = _HEMI_COORD_RE.match(trimmed)
    if m:
        lat = float(m.group(1))
        lon = float(m.group(3))
        if m.group(2).upper() == "S":
            lat = -lat
        if m.group(4).upper() == "W":
            lon = -lon
    else:
        m = _SIGNED_COORD_RE.match(trimmed)
        if not m:
            return None
        lat = float(m.group(1))
        lon = float(m.group(2))

    if abs(lat) > 90 or abs(lon) > 180:
        return None
    return lat, lon


def haversine_nm(lat1, lon1, lat2, lon2):
    """Great-circle distance between two points in nautical miles.

    Works with both scalars and numpy arrays.
    """
    lat1, lon1, lat2, lon2 = (np.radians(x) for x in (lat1, lon1, lat2, lon2))
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_NM * np.arcsin(np.sqrt(np.minimum(a, 1.0)))


# =============================================================================
# Logbook Parsing
# =============================================================================

# Normalized header names (lowercase, alphanumerics only). Order matters:
# the first alias present in the header row picks the column.
DATE_HEADER_ALIASES = ("date", "flightdate")
FROM_HEADER_ALIASES = (
    "from", "origin", "departure", "fromairport", "departureairport")
TO_HEADER_ALIASES = (
    "to", "destination", "arrival", "toairport", "arrivalairport")
TEXT_HEADER_HINTS = (
    "notes", "remarks", "route", "comment", "via", "approach", "procedure")

_SECTION_HEADER_RE = re.compile(r"Table\s*$", re.IGNORECASE)
_HEADER_CELL_RE = re.compile(r"[^a-z0-9]+")


def _normalize_header_cell(value: str) -> str:
    return _HEADER_CELL_RE.sub("", value.strip().lower())


def _is_blank_row(row: list[str]) -> bool:
    return all(cell.strip() == "" for cell in row)


def _is_section_header(row: list[str]) -> bool:
    first = row[0].strip() if row else ""
    return bool(first) and bool(_SECTION_HEADER_RE.search(first))


def _is_flights_header(headers: list[str]) -> bool:
    present = set(headers)
    return all(present.intersection(aliases) for aliases in
               (DATE_HEADER_ALIASES, FROM_HEADER_ALIASES, TO_HEADER_ALIASES))


def _find_column(headers: list[str], aliases: tuple[str, ...]) -> int:
    for alias in aliases:
        if alias in headers:
            return headers.index(alias)
    return -1


def _read_rows(csv_text: str) -> list[list[str]]:
    """Read delimited text into raw rows without assuming a header.

    The csv module reports a blank line as a row with no columns; those are
    kept as a single empty cell so that blank separators between tables
    still count as blank rows.
    """
    text = csv_text.removeprefix("\ufeff")
    # Remarks cells can exceed the csv module's default field limit
    previous_limit = csv.field_size_limit(CSV_FIELD_SIZE_LIMIT)
    try:
        reader = csv.reader(io.StringIO(text, newline=None))
        return [row if row else [""] for row in reader]
    finally:
        csv.field_size_limit(previous_limit)


def parse_logbook(csv_text: str) -> LogbookParseResult:
    """Extract the flights from a ForeFlight logbook export.

    The export concatenates several tables ("Aircraft Table", "Flights
    Table", ...), each introduced by a row whose first cell ends in "Table".
    The flights header is the first row naming a date, a from and a to
    column (see the *_HEADER_ALIASES). Data rows run until the next section
    header or three consecutive blank rows.

    Never raises for malformed rows; returns an error string only when no
    flights table can be located.
    """
    try:
        rows = _read_rows(csv_text)
    except csv.Error as e:
        return LogbookParseResult(flights=[], error=f"CSV parse error: {e}")

    header_index = next(
        (i for i, row in enumerate(rows)
         if _is_flights_header([_normalize_header_cell(c) for c in row])),
        -1)
    if header_index == -1:
        return LogbookParseResult(flights=[], error=NO_FLIGHTS_TABLE)

    headers = [_normalize_header_cell(c) for c in rows[header_index]]
    date_col = _find_column(headers, DATE_HEADER_ALIASES)
    from_col = _find_column(headers, FROM_HEADER_ALIASES)
    to_col = _find_column(headers, TO_HEADER_ALIASES)
    if -1 in (date_col, from_col, to_col):
        return LogbookParseResult(flights=[], error=NO_FLIGHTS_TABLE)
    text_cols = [i for i, h in enumerate(headers)
                 if any(hint in h for hint in TEXT_HEADER_HINTS)]

    def cell(row: list[str], index: int) -> str:
        return row[index] if index < len(row) else ""

    flights: list[FlightRow] = []
    blank_run = 0
    for row in rows[header_index + 1:]:
        if _is_section_header(row):
            break
        if _is_blank_row(row):
            blank_run += 1
            if blank_run >= BLANK_ROWS_END_TABLE:
                break
            continue

        blank_run = 0
        flights.append(FlightRow(
            date=cell(row, date_col),
            origin=cell(row, from_col),
            destination=cell(row, to_col),
            text_fields=[v for v in (cell(row, i) for i in text_cols)
                         if v.strip()],
        ))

    print(f"  Flights table header at row {header_index + 1}: "
          f"{len(flights)} flights")
    return LogbookParseResult(flights=flights)


def load_logbook(path: str | Path) -> LogbookParseResult:
    """Read and parse a logbook export file."""
    path = Path(path)
    print(f"Reading logbook: {path}")
    return parse_logbook(path.read_text(encoding="utf-8-sig"))


# =============================================================================
# Facility Catalog Loading
# =============================================================================

# Lowercased column names accepted for each facility field, in priority order.
CATALOG_COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "id": ("id", "airportid", "airport_id", "airport"),
    "name": ("name", "airportname", "airport_name"),
    "city": ("city", "city_name", "municipality"),
    "county": ("county",),
    "state": ("state", "state_code", "region"),
    "latitude": ("latitude", "lat", "latitude_deg"),
    "longitude": ("longitude", "lon", "long", "longitude_deg"),
    "towered": ("towered", "tower"),
    "longest_runway_ft": ("longest_runway_ft", "longestrunwayft",
                          "runway_length_ft"),
    "surface_category": ("surface_category", "surface"),
    "type": ("type",),
    "sources": ("sources",),
    "corroborated": ("corroborated",),
}

_TOWERED_VALUES = {"yes": True, "true": True, "no": False, "false": False}


def _read_table(csv_text: str) -> pd.DataFrame:
    """Read a header-named CSV as all-string columns.

    Rows with more cells than the header (e.g. an unquoted comma in a name)
    are kept with the extra cells cut off; short rows are padded with "".
    """
    text = csv_text.removeprefix("\ufeff")
    try:
        header = pd.read_csv(io.StringIO(text), nrows=0, dtype=str).columns
        df = pd.read_csv(
            io.StringIO(text),
            engine="python",
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            on_bad_lines=lambda cells: cells[:len(header)],
        )
    except pd.errors.EmptyDataError:
        return pd.DataFrame()
    return df.fillna("")


def _coalesce(df: pd.DataFrame, columns: dict[str, str],
              aliases: tuple[str, ...]) -> pd.Series:
    """First non-blank value per row across the aliased columns."""
    result = pd.Series("", index=df.index, dtype=object)
    for alias in aliases:
        col = columns.get(alias)
        if col is None:
            continue
        values = df[col].astype(str).str.strip()
        result = result.where(result != "", values)
    return result


def _optional_str(value: str) -> str | None:
    return value if value else None


def _facilities_from_frame(df: pd.DataFrame, source: str) -> list[Facility]:
    """Turn a catalog DataFrame into Facility records.

    Columns are resolved once through CATALOG_COLUMN_ALIASES. Rows without a
    usable id are dropped. On duplicate ids the facility keeps the position
    of its first row and the values of its last row.
    """
    if df.empty:
        return []

    columns: dict[str, str] = {}
    for col in df.columns:
        columns.setdefault(str(col).strip().lower(), col)
    raw = {key: _coalesce(df, columns, aliases)
           for key, aliases in CATALOG_COLUMN_ALIASES.items()}

    ids = raw["id"].map(normalize_facility_id)
    lat = pd.to_numeric(raw["latitude"], errors="coerce")
    lon = pd.to_numeric(raw["longitude"], errors="coerce")
    lat = lat.where(np.isfinite(lat))
    lon = lon.where(np.isfinite(lon))
    towered = raw["towered"].str.lower().map(_TOWERED_VALUES)
    runway = pd.to_numeric(raw["longest_runway_ft"], errors="coerce")
    runway = runway.where(np.isfinite(runway) & (runway >= 0))
    surface = raw["surface_category"].where(
        raw["surface_category"].isin(SURFACE_CATEGORIES))

    by_id: dict[str, Facility] = {}
    for i in range(len(df)):
        facility_id = ids.iat[i]
        if not facility_id:
            continue
        by_id[facility_id] = Facility(
            id=facility_id,
            name=raw["name"].iat[i] or facility_id,
            city=raw["city"].iat[i],
            county=raw["county"].iat[i],
            state=_optional_str(raw["state"].iat[i].upper()),
            latitude=None if pd.isna(lat.iat[i]) else float(lat.iat[i]),
            longitude=None if pd.isna(lon.iat[i]) else float(lon.iat[i]),
            towered=None if pd.isna(towered.iat[i]) else bool(towered.iat[i]),
            longest_runway_ft=(None if pd.isna(runway.iat[i])
                               else int(round(runway.iat[i]))),
            surface_category=None if pd.isna(surface.iat[i]) else surface.iat[i],
            type=_optional_str(raw["type"].iat[i]),
            sources=_optional_str(raw["sources"].iat[i]),
            corroborated=_optional_str(raw["corroborated"].iat[i]),
            source=source,
        )
    return list(by_id.values())


def parse_facility_catalog(csv_text: str,
                           source: str = "public") -> list[Facility]:
    """Parse the prebuilt facility catalog (facilities_master.csv).

    Expected columns: id,state,name,city,county,latitude,longitude,towered,
    longest_runway_ft,surface_category,type,sources,corroborated. Other
    casings and the aliases in CATALOG_COLUMN_ALIASES are accepted.
    Unparsable numbers become None; rows without an id are dropped.
    """
    df = _read_table(csv_text)
    facilities = _facilities_from_frame(df, source)
    print(f"  Parsed {len(facilities)} facilities from {len(df)} rows")
    return facilities


def parse_ourairports(csv_text: str,
                      region: str | None = None) -> list[Facility]:
    """Parse an OurAirports airports.csv into secondary facilities.

    Args:
        region: ISO region to keep (e.g. "US-CA"); None keeps all of the US.
    """
    df = _read_table(csv_text)
    if df.empty or not {"ident", "iso_region", "iso_country"} <= set(df.columns):
        return []
    if region is not None:
        df = df[df["iso_region"].str.upper() == region.upper()]
    else:
        df = df[df["iso_country"].str.upper() == "US"]

    # OurAirports "id" is a row number; the identifier lives in "ident"
    df = df.drop(columns=["id"], errors="ignore").rename(
        columns={"ident": "id"})
    df = df.assign(state=df["iso_region"].str.split("-").str[-1])
    facilities = _facilities_from_frame(df.reset_index(drop=True),
                                        source="ourairports")
    print(f"  Parsed {len(facilities)} OurAirports facilities"
          + (f" in {region}" if region else ""))
    return facilities


def enrich_public_facilities(public_facilities: list[Facility],
                             secondary_facilities: list[Facility],
                             ) -> list[Facility]:
    """Fill missing coordinates, names and cities from secondary data."""
    secondary = {f.id: f for f in secondary_facilities}
    enriched = []
    for facility in public_facilities:
        other = secondary.get(facility.id)
        if other is None:
            enriched.append(facility)
            continue
        enriched.append(replace(
            facility,
            latitude=(facility.latitude if facility.latitude is not None
                      else other.latitude),
            longitude=(facility.longitude if facility.longitude is not None
                       else other.longitude),
            name=facility.name or other.name,
            city=facility.city or other.city,
        ))
    return enriched


# =============================================================================
# Scope Assembly
# =============================================================================

def apply_exclusion(ids: set[str], enabled: bool,
                    excluded_ids: frozenset[str] = HUB_EXCLUSIONS) -> set[str]:
    """Return ids without the excluded hubs (a copy; ids is not modified)."""
    if not enabled:
        return set(ids)
    return set(ids) - excluded_ids


def build_scope(scope: str,
                public_facilities: list[Facility],
                secondary_facilities: list[Facility],
                exclusion_enabled: bool = False,
                excluded_ids: frozenset[str] = HUB_EXCLUSIONS,
                ) -> list[Facility]:
    """Assemble the facility list that forms a coverage denominator.

    public:   the prebuilt catalog as-is
    private:  secondary airports not already in the public catalog
    heliport: secondary heliports
    seaplane: secondary seaplane bases
    all:      the union of the above, de-duplicated by id

    Duplicates keep the first entry; a later entry only fills in missing
    coordinates. With exclusion_enabled the excluded_ids are dropped.
    """
    public_ids = {f.id for f in public_facilities}
    private = [f for f in secondary_facilities
               if f.type in PRIVATE_TYPES and f.id not in public_ids]
    heliports = [f for f in secondary_facilities if f.type == HELIPORT_TYPE]
    seaplane = [f for f in secondary_facilities if f.type == SEAPLANE_TYPE]

    if scope == "public":
        combined = list(public_facilities)
    elif scope == "private":
        combined = private
    elif scope == "heliport":
        combined = heliports
    elif scope == "seaplane":
        combined = seaplane
    elif scope == "all":
        combined = list(public_facilities) + private + heliports + seaplane
    else:
        raise ValueError(f"Unknown scope {scope!r}; expected one of {SCOPES}")

    deduped: dict[str, Facility] = {}
    for facility in combined:
        if exclusion_enabled and facility.id in excluded_ids:
            continue
        existing = deduped.get(facility.id)
        if existing is None:
            deduped[facility.id] = facility
        elif existing.latitude is None and facility.latitude is not None:
            deduped[facility.id] = replace(
                existing, latitude=facility.latitude,
                longitude=facility.longitude)
    return list(deduped.values())


# =============================================================================
# Coverage Matching
# =============================================================================

class NearestFacilityIndex:
    """Nearest-facility lookup for raw coordinate endpoints.

    Facilities are kept sorted by latitude so a lookup only measures the
    latitude band that could possibly lie within max_distance_nm.
    Equidistant facilities resolve to the lexicographically smallest id.
    """

    def __init__(self, facilities) -> None:
        located = sorted((f for f in facilities if f.has_coordinates),
                         key=lambda f: (f.latitude, f.id))
        self.ids = np.array([f.id for f in located], dtype=object)
        self.lats = np.array([f.latitude for f in located], dtype=float)
        self.lons = np.array([f.longitude for f in located], dtype=float)

    def __len__(self) -> int:
        return len(self.ids)

    def nearest(self, lat: float, lon: float,
                max_distance_nm: float = COORDINATE_MATCH_MAX_NM,
                ) -> tuple[str, float] | None:
        """Return (facility_id, distance_nm) of the closest facility within range."""
        # Great-circle distance is never less than the latitude difference
        band_deg = max_distance_nm / NM_PER_DEG_LAT + 1e-9
        lo = np.searchsorted(self.lats, lat - band_deg, side="left")
        hi = np.searchsorted(self.lats, lat + band_deg, side="right")
        if lo >= hi:
            return None

        dist = haversine_nm(lat, lon, self.lats[lo:hi], self.lons[lo:hi])
        best = float(dist.min())
        if not math.isfinite(best) or best > max_distance_nm:
            return None
        return min(self.ids[lo:hi][dist == best]), best


def flight_match_events(flight: FlightRow, facility_ids: set[str],
                        index: NearestFacilityIndex | None = None,
                        max_distance_nm: float = COORDINATE_MATCH_MAX_NM,
                        ) -> list[tuple[str, str]]:
    """List the (facility_id, source) evidence found in one flight.

    An endpoint that doesn't normalize to a known id is tried as a raw
    coordinate and snapped to the nearest indexed facility. Note tokens
    that look like coordinates are never looked up as identifiers.
    """
    events: list[tuple[str, str]] = []

    for raw, source in ((flight.origin, ENDPOINT_FROM),
                        (flight.destination, ENDPOINT_TO)):
        raw = raw or ""
        facility_id = normalize_facility_id(raw)
        if facility_id in facility_ids:
            events.append((facility_id, source))
            continue
        if index is None or not len(index):
            continue
        coordinate = parse_coordinate(raw)
        if coordinate is None:
            continue
        hit = index.nearest(*coordinate, max_distance_nm=max_distance_nm)
        if hit is not None:
            events.append((hit[0], source))

    for text in flight.text_fields:
        for token in tokenize_text(text):
            if is_coordinate_token(token):
                continue
            facility_id = normalize_facility_id(token)
            if facility_id in facility_ids:
                events.append((facility_id, NOTES_MATCH))

    return events


def _coordinate_index(facility_ids: set[str],
                      facilities_by_id: dict[str, Facility] | None,
                      ) -> NearestFacilityIndex | None:
    if not facilities_by_id:
        return None
    return NearestFacilityIndex(
        f for f in facilities_by_id.values() if f.id in facility_ids)


def match_flights(flights: list[FlightRow], facility_ids,
                  facilities_by_id: dict[str, Facility] | None = None,
                  max_distance_nm: float = COORDINATE_MATCH_MAX_NM,
                  ) -> dict[str, FacilityMatch]:
    """Count endpoint and notes evidence per facility across all flights.

    Args:
        flights: parsed logbook flights
        facility_ids: ids of the facilities in scope; only these are counted
        facilities_by_id: facility records; when given, raw coordinate
            endpoints are snapped to the nearest in-scope facility
        max_distance_nm: snap radius for coordinate endpoints

    Returns a fresh dict of FacilityMatch keyed by facility id. Counts are
    cumulative; a flight naming the same facility twice counts twice.
    """
    facility_ids = set(facility_ids)
    index = _coordinate_index(facility_ids, facilities_by_id)

    matches: dict[str, FacilityMatch] = {}
    for flight in flights:
        for facility_id, source in flight_match_events(
                flight, facility_ids, index, max_distance_nm):
            entry = matches.get(facility_id)
            if entry is None:
                entry = matches[facility_id] = FacilityMatch(id=facility_id)
            setattr(entry.counts, source, getattr(entry.counts, source) + 1)
    return matches


def compute_visited(matches: dict[str, FacilityMatch],
                    options: MatchOptions = MatchOptions()) -> set[str]:
    """Ids whose selected evidence counters sum to more than zero."""
    return {facility_id for facility_id, match in matches.items()
            if match.counts.selected(options).total > 0}


def compute_frequency(matches: dict[str, FacilityMatch],
                      options: MatchOptions = MatchOptions(),
                      ) -> dict[str, Frequency]:
    """Per-facility totals; counters not selected by options are zeroed."""
    frequency: dict[str, Frequency] = {}
    for facility_id, match in matches.items():
        counts = match.counts.selected(options)
        frequency[facility_id] = Frequency(total=counts.total, counts=counts)
    return frequency


# =============================================================================
# Aggregation Views
# =============================================================================

def coverage(facilities: list[Facility], visited: set[str]) -> Coverage:
    """Visited share of a facility list."""
    return Coverage(total=len(facilities),
                    visited=sum(1 for f in facilities if f.id in visited))


def coverage_by_region(facilities: list[Facility],
                       visited: set[str]) -> dict[str, Coverage]:
    """Coverage per state; facilities without a state are left out."""
    totals: dict[str, int] = {}
    hits: dict[str, int] = {}
    for f in facilities:
        if not f.state:
            continue
        totals[f.state] = totals.get(f.state, 0) + 1
        if f.id in visited:
            hits[f.state] = hits.get(f.state, 0) + 1
    return {state: Coverage(total=totals[state], visited=hits.get(state, 0))
            for state in sorted(totals)}


def frequency_table(frequency: dict[str, Frequency],
                    limit: int | None = None) -> list[tuple[str, Frequency]]:
    """Visited facilities, most frequent first (ties by id)."""
    entries = sorted(
        ((fid, freq) for fid, freq in frequency.items() if freq.total > 0),
        key=lambda e: (-e[1].total, e[0]))
    return entries[:limit] if limit is not None else entries


def most_visited_facility(frequency: dict[str, Frequency],
                          ) -> tuple[str, int] | None:
    top = frequency_table(frequency, limit=1)
    if not top:
        return None
    return top[0][0], top[0][1].total


def most_visited_region(frequency: dict[str, Frequency],
                        facilities_by_id: dict[str, Facility],
                        ) -> tuple[str, int] | None:
    """State with the highest summed visit total (ties by state code)."""
    totals: dict[str, int] = {}
    for facility_id, freq in frequency.items():
        facility = facilities_by_id.get(facility_id)
        if facility is None or not facility.state or freq.total <= 0:
            continue
        totals[facility.state] = totals.get(facility.state, 0) + freq.total
    if not totals:
        return None
    state = min(totals, key=lambda s: (-totals[s], s))
    return state, totals[state]


_RELATIVE_DATE_WORDS = frozenset({"now", "today", "tomorrow", "yesterday"})


def parse_flight_date(value: str):
    """Best-effort date of a logbook entry, or None if unparsable."""
    if not value or not value.strip():
        return None
    # pandas resolves these against the clock, not the logbook
    if value.strip().lower() in _RELATIVE_DATE_WORDS:
        return None
    ts = pd.to_datetime(value.strip(), errors="coerce")
    if pd.isna(ts):
        return None
    return ts.date()


def first_visit_dates(flights: list[FlightRow], facility_ids,
                      facilities_by_id: dict[str, Facility] | None = None,
                      options: MatchOptions = MatchOptions(),
                      max_distance_nm: float = COORDINATE_MATCH_MAX_NM,
                      ) -> dict:
    """Earliest dated visit per facility, using the evidence options select.

    Flights whose date can't be parsed are skipped.
    """
    facility_ids = set(facility_ids)
    index = _coordinate_index(facility_ids, facilities_by_id)
    sources = options.sources

    parsed: dict[str, object] = {}
    first: dict = {}
    for flight in flights:
        if flight.date not in parsed:
            parsed[flight.date] = parse_flight_date(flight.date)
        day = parsed[flight.date]
        if day is None:
            continue
        for facility_id, source in flight_match_events(
                flight, facility_ids, index, max_distance_nm):
            if source not in sources:
                continue
            if facility_id not in first or day < first[facility_id]:
                first[facility_id] = day
    return first


def plan_trip(home_id: str, facilities: list[Facility], visited: set[str],
              max_distance_nm: float,
              min_runway_ft: float = 0,
              surfaces=None,
              towered: bool | None = None,
              usable_fraction: float = USABLE_RUNWAY_FRACTION,
              ) -> list[TripCandidate]:
    """Unvisited facilities within reach of a home base.

    Args:
        home_id: home base identifier (normalized before lookup)
        facilities: the scope to pick from; must contain the home base
        visited: ids already landed at
        max_distance_nm: great-circle radius around the home base
        min_runway_ft: minimum usable runway (usable_fraction of the
            published length); facilities with unknown length fail any
            positive minimum
        surfaces: allowed surface categories; None allows all. A missing
            surface counts as "unknown".
        towered: True/False to require that tower status; None for any

    Sorted by distance, then longer usable runway, then id.
    """
    home_id = normalize_facility_id(home_id)
    home = next((f for f in facilities if f.id == home_id), None)
    if home is None or not home.has_coordinates:
        return []

    pool = [f for f in facilities
            if f.id != home.id and f.id not in visited and f.has_coordinates]
    if not pool:
        return []

    dist = haversine_nm(home.latitude, home.longitude,
                        np.array([f.latitude for f in pool]),
                        np.array([f.longitude for f in pool]))

    allowed_surfaces = set(surfaces) if surfaces is not None else None
    candidates: list[TripCandidate] = []
    for facility, d in zip(pool, dist):
        if d > max_distance_nm:
            continue
        usable = (facility.longest_runway_ft * usable_fraction
                  if facility.longest_runway_ft is not None else None)
        if min_runway_ft and (usable is None or usable < min_runway_ft):
            continue
        if (allowed_surfaces is not None
                and (facility.surface_category or "unknown")
                not in allowed_surfaces):
            continue
        if towered is not None and facility.towered is not towered:
            continue
        candidates.append(TripCandidate(
            facility=facility, distance_nm=float(d), usable_runway_ft=usable))

    candidates.sort(key=lambda c: (c.distance_nm, -(c.usable_runway_ft or 0),
                                   c.facility.id))
    return candidates


def search_facilities(facilities: list[Facility],
                      query: str) -> list[Facility]:
    """Case-insensitive substring filter over id, name, city and county."""
    q = query.strip().lower()
    if not q:
        return list(facilities)
    return [f for f in facilities
            if any(q in value.lower()
                   for value in (f.id, f.name, f.city, f.county))]


def sort_facilities(facilities: list[Facility],
                    key: str = "id") -> list[Facility]:
    if key not in ("id", "name", "city"):
        raise ValueError(f"Cannot sort facilities by {key!r}")
    return sorted(facilities, key=lambda f: (getattr(f, key) or "").lower())


# =============================================================================
# High-level API
# =============================================================================

class FacilityDatabase:
    """Access to the public facility catalog and OurAirports secondary data.

    The public catalog is the prebuilt facilities_master.csv. OurAirports
    is downloaded on first use and cached under data_dir. Parsed lists are
    kept for the life of the instance and never modified.
    """

    def __init__(self, data_dir: str | Path = "data") -> None:
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._public: list[Facility] | None = None
        self._secondary: dict[str | None, list[Facility]] = {}

    def get_public_facilities(self, path: str | Path | None = None,
                              ) -> list[Facility]:
        """Load the prebuilt catalog (default: data_dir/facilities_master.csv)."""
        if self._public is not None:
            return self._public
        catalog_path = (Path(path) if path is not None
                        else self.data_dir / "facilities_master.csv")
        print(f"Loading facility catalog: {catalog_path}")
        self._public = parse_facility_catalog(
            catalog_path.read_text(encoding="utf-8-sig"))
        return self._public

    def get_secondary_facilities(self, region: str | None = None,
                                 ) -> list[Facility]:
        """OurAirports facilities for an ISO region (None for all of the US)."""
        if region not in self._secondary:
            csv_path = self._ensure_ourairports()
            print(f"Loading OurAirports: {csv_path}")
            self._secondary[region] = parse_ourairports(
                csv_path.read_text(encoding="utf-8"), region=region)
        return self._secondary[region]

    def get_scope(self, scope: str = "public", exclude_hubs: bool = False,
                  region: str | None = None) -> list[Facility]:
        """Facilities for a coverage scope; only non-public scopes download.

        When OurAirports data is loaded, public facilities missing
        coordinates, names or cities are filled in from it.
        """
        public = self.get_public_facilities()
        secondary = (self.get_secondary_facilities(region)
                     if scope != "public" else [])
        if secondary:
            public = enrich_public_facilities(public, secondary)
        facilities = build_scope(scope, public, secondary, exclude_hubs)
        print(f"  Scope '{scope}': {len(facilities)} facilities")
        return facilities

    def _ensure_ourairports(self) -> Path:
        """Download (if needed) the OurAirports CSV and return its path."""
        csv_path = self.data_dir / "airports.csv"
        if not csv_path.exists():
            print("Downloading OurAirports database...")
            r = requests.get(AIRPORTS_CSV_URL, timeout=60)
            r.raise_for_status()
            csv_path.write_bytes(r.content)
            print(f"  Saved {len(r.content) / 1024 / 1024:.1f} MB to {csv_path}")
        return csv_path
