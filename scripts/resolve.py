"""Resolve terms against a local value resolver database.

Prints the ranked candidates for each term, with a per-strategy breakdown.

Usage:
    python scripts/resolve.py "Nike" "MS" -e Vendor
    python scripts/resolve.py "Adids" -e Vendor --caller user:alice,team:finance --explain
    python scripts/resolve.py --stats vendors
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from value_resolver.config import load_settings
from value_resolver.engine import explain_candidate
from value_resolver.errors import ResolutionTimeoutError, ValueResolverError
from value_resolver.models import CallerIdentity, ResolveQuery, ResolveRequest
from value_resolver.service import build_service


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Resolve terms to canonical values")
    parser.add_argument("terms", nargs="*", help="Terms to resolve")
    parser.add_argument("--entity-type", "-e", action="append", dest="entity_types",
                        help="Entity type to search (repeatable)")
    parser.add_argument("--domain", "-d", help="Only stores of this domain")
    parser.add_argument("--exclude", "-x", action="append", default=[],
                        help="Value never to return (repeatable)")
    parser.add_argument("--caller", "-c", default="", help='Identity, e.g. "user:alice,team:finance"')
    parser.add_argument("--max", "-n", type=int, default=5, dest="max_candidates")
    parser.add_argument("--min-score", type=float, default=0.5)
    parser.add_argument("--db", type=Path, help="Database path (default from settings)")
    parser.add_argument("--explain", action="store_true", help="Show per-strategy scores")
    parser.add_argument("--json", action="store_true", help="Print the raw JSON response")
    parser.add_argument("--stats", metavar="STORE", help="Show counts for a store and exit")
    return parser.parse_args(argv)


def main(argv=None):
    """Entry point."""
    args = parse_args(argv)

    settings = load_settings()
    if args.db:
        settings = settings.model_copy(update={"db_path": args.db})
    service = build_service(settings)

    try:
        if args.stats:
            print(service.pipeline.stats(args.stats).model_dump_json(indent=2))
            return 0

        if not args.terms or not args.entity_types:
            print("Error: give at least one term and one --entity-type", file=sys.stderr)
            return 2

        request = ResolveRequest(
            domain=args.domain,
            queries=[
                ResolveQuery(term=t, entity_types=args.entity_types, exclude_values=args.exclude)
                for t in args.terms
            ],
            max_candidates=args.max_candidates,
            min_score=args.min_score,
        )
        caller = CallerIdentity.from_header(args.caller)
        response = asyncio.run(service.engine.resolve(request, caller))
    except (ValueResolverError, ResolutionTimeoutError) as e:
        print(f"Error: {json.dumps(e.to_dict())}", file=sys.stderr)
        return 1

    if args.json:
        print(response.model_dump_json(indent=2))
        return 0

    for result in response.results:
        print(f"\n=== {result.term} ===")
        for entity_type, group in result.by_entity_type.items():
            print(f"[{entity_type}] {len(group.candidates)} candidate(s)")
            for candidate in group.candidates:
                if args.explain:
                    print(explain_candidate(result.term, candidate))
                else:
                    print(f"  {candidate.score:.3f} {candidate.strategy.value:<17} "
                          f"{candidate.matched_term} (row {candidate.row_id}, {candidate.source})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
