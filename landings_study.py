#!/usr/bin/env python3
"""
Show which airports a ForeFlight logbook has landed at.

Usage:
    python landings_study.py logbook.csv                  # public airports
    python landings_study.py logbook.csv --scope all      # + OurAirports data
    python landings_study.py logbook.csv --exclude-hubs   # skip SFO/LAX/SAN
    python landings_study.py logbook.csv --no-notes --arrivals-only
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

import landings as m


def format_percent(ratio: float) -> str:
    return f"{round(ratio * 100)}%"


def print_table(cols, rows) -> None:
    """Print rows under (header, width, right_justify, format_fn) columns."""
    header = "  ".join(h.rjust(w) if rj else h.ljust(w)
                       for h, w, rj, _ in cols)
    sep = "  ".join("-" * w for _, w, _, _ in cols)
    print(header)
    print(sep)
    for row in rows:
        print("  ".join(fmt(row).rjust(w) if rj else fmt(row).ljust(w)
                        for _, w, rj, fmt in cols))


def print_coverage(scope: str, cov: m.Coverage,
                   regions: dict[str, m.Coverage] | None = None) -> None:
    print(f"\nCOVERAGE ({scope.upper()})\n")
    print(f"  {cov.visited:,} of {cov.total:,} - {format_percent(cov.ratio)}")
    if not regions:
        return
    print()
    print_table([
        ("State",   5, False, lambda r: r[0]),
        ("Visited", 7, True, lambda r: f"{r[1].visited:,}"),
        ("Total",   7, True, lambda r: f"{r[1].total:,}"),
        ("Pct",     4, True, lambda r: format_percent(r[1].ratio)),
    ], sorted(regions.items()))


def print_frequency(entries, facilities_by_id, first_visits) -> None:
    print("\nMOST VISITED\n")
    if not entries:
        print("No matching landings found.")
        return

    def name(r):
        f = facilities_by_id.get(r[0])
        return f.name[:30] if f is not None else ""

    def first(r):
        day = first_visits.get(r[0])
        return day.isoformat() if day is not None else ""

    print_table([
        ("ID",    5, False, lambda r: r[0]),
        ("Name", 30, False, name),
        ("Total", 5, True, lambda r: str(r[1].total)),
        ("From",  4, True, lambda r: str(r[1].counts.endpoint_from)),
        ("To",    4, True, lambda r: str(r[1].counts.endpoint_to)),
        ("Notes", 5, True, lambda r: str(r[1].counts.notes_match)),
        ("First", 10, False, first),
    ], entries)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Match a ForeFlight logbook export against US airports "
                    "and report landing coverage.")
    parser.add_argument("logbook", help="ForeFlight logbook CSV export")
    parser.add_argument("--catalog", default=None,
                        help="facility catalog CSV "
                             "(default: DATA_DIR/facilities_master.csv)")
    parser.add_argument("--data-dir", default="data",
                        help="directory for catalog and cached downloads")
    parser.add_argument("--scope", choices=m.SCOPES, default="public",
                        help="facility set to measure coverage against")
    parser.add_argument("--region", default=None,
                        help="OurAirports ISO region for non-public scopes "
                             "(e.g. US-CA; default: all US)")
    parser.add_argument("--exclude-hubs", action="store_true",
                        help="leave " + "/".join(sorted(m.HUB_EXCLUSIONS))
                             + " out of coverage")
    parser.add_argument("--no-notes", action="store_true",
                        help="ignore identifiers found in remarks/route")
    parser.add_argument("--arrivals-only", action="store_true",
                        help="count only the To endpoint of each flight")
    parser.add_argument("--by-state", action="store_true",
                        help="also print coverage per state")
    parser.add_argument("--top", type=int, default=25,
                        help="number of most-visited airports to list "
                             "(0 for all)")
    args = parser.parse_args(argv)

    result = m.load_logbook(args.logbook)
    if result.error:
        print(f"Could not read logbook: {result.error}")
        sys.exit(1)

    db = m.FacilityDatabase(args.data_dir)
    if args.catalog is not None:
        db.get_public_facilities(Path(args.catalog))
    facilities = db.get_scope(args.scope, exclude_hubs=args.exclude_hubs,
                              region=args.region)
    facilities_by_id = {f.id: f for f in facilities}
    facility_ids = set(facilities_by_id)

    options = m.MatchOptions(include_notes=not args.no_notes,
                             arrivals_only=args.arrivals_only)
    matches = m.match_flights(result.flights, facility_ids, facilities_by_id)
    visited = m.compute_visited(matches, options)
    frequency = m.compute_frequency(matches, options)
    first_visits = m.first_visit_dates(result.flights, facility_ids,
                                       facilities_by_id, options)

    print_coverage(args.scope, m.coverage(facilities, visited),
                   m.coverage_by_region(facilities, visited)
                   if args.by_state else None)
    print_frequency(m.frequency_table(frequency, limit=args.top or None),
                    facilities_by_id, first_visits)

    top_state = m.most_visited_region(frequency, facilities_by_id)
    if top_state is not None:
        print(f"\nMost visited state: {top_state[0]} ({top_state[1]} landings)")


if __name__ == "__main__":
    main()
