#!/usr/bin/env python3
"""
Trip planner: unvisited airports within reach of a home base.

Usage:
    python trip_planner.py logbook.csv KPAO
    python trip_planner.py logbook.csv PAO --radius 75 --min-runway 2500
    python trip_planner.py logbook.csv PAO --surface paved --towered no
"""

import argparse
import sys

import landings as m

TOWER_CHOICES = {"yes": True, "no": False, "any": None}


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="List unvisited airports near a home base.")
    parser.add_argument("logbook", help="ForeFlight logbook CSV export")
    parser.add_argument("home", help="home base identifier (e.g. KPAO)")
    parser.add_argument("--catalog", default=None,
                        help="facility catalog CSV "
                             "(default: DATA_DIR/facilities_master.csv)")
    parser.add_argument("--data-dir", default="data")
    parser.add_argument("--radius", type=float, default=100.0,
                        help="search radius in NM (default: 100)")
    parser.add_argument("--min-runway", type=float, default=0,
                        help="minimum usable runway in feet "
                             f"({m.USABLE_RUNWAY_FRACTION * 100:.0f}%% of published)")
    parser.add_argument("--surface", action="append",
                        choices=m.SURFACE_CATEGORIES,
                        help="allowed surface (repeatable; default: any)")
    parser.add_argument("--towered", choices=sorted(TOWER_CHOICES),
                        default="any")
    parser.add_argument("--exclude-hubs", action="store_true")
    args = parser.parse_args(argv)

    result = m.load_logbook(args.logbook)
    if result.error:
        print(f"Could not read logbook: {result.error}")
        sys.exit(1)

    db = m.FacilityDatabase(args.data_dir)
    facilities = db.get_public_facilities(args.catalog)
    if args.exclude_hubs:
        facilities = m.build_scope("public", facilities, [], True)
    facilities_by_id = {f.id: f for f in facilities}

    matches = m.match_flights(result.flights, set(facilities_by_id),
                              facilities_by_id)
    visited = m.compute_visited(matches)

    home = m.normalize_facility_id(args.home)
    if home not in facilities_by_id:
        print(f"Unknown home base: {args.home}")
        sys.exit(1)

    candidates = m.plan_trip(
        home, facilities, visited, args.radius,
        min_runway_ft=args.min_runway,
        surfaces=args.surface,
        towered=TOWER_CHOICES[args.towered],
    )

    print(f"\nUNVISITED AIRPORTS WITHIN {args.radius:g} NM OF {home}\n")
    if not candidates:
        print("No candidates found.")
        return

    for c in candidates:
        f = c.facility
        runway = (f"{c.usable_runway_ft:,.0f}'"
                  if c.usable_runway_ft is not None else "?")
        tower = {True: "towered", False: "non-towered"}.get(f.towered, "")
        print(f"  {f.id:<5} {f.name[:30]:<30} {c.distance_nm:>6.1f} NM  "
              f"{runway:>7}  {f.surface_category or 'unknown':<8} {tower}")
    print(f"\nTotal: {len(candidates)} airports")


if __name__ == "__main__":
    main()
