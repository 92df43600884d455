"""
Seed script for the Incident Trust Engine store (in-memory or Firestore).

Usage:
  - Dry run (default): python scripts/seed_db.py
  - Apply to configured store: python scripts/seed_db.py --apply
  - Force the in-memory store even if Firebase is configured: python scripts/seed_db.py --apply --force-mock

Behavior:
  - Loads `db_seed.json` from repo root: {"incidents": [{"reporter": {...}, ...draft fields}]}
  - Creates each incident through IncidentService, so scores, geo cells and
    history are filled in exactly like a real report.
  - A guest reporter with id "new" gets a freshly created guest.

NOTE: When applying to real Firestore, ensure `FIREBASE_CREDENTIALS_PATH` and `USE_MOCK_DB=false` are set in `.env`.
"""

import argparse
import json
import logging
import os

from app.core.errors import EngineError
from app.core.settings import settings
from app.models.identity import VoterIdentity, VoterKind
from app.models.incident import IncidentDraft

logger = logging.getLogger("seed_db")


def load_seed(path: str = "./db_seed.json") -> dict:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def write_to_store(seed: dict, apply: bool = False):
    from app.services.guest_service import get_guest_service
    from app.services.incident_service import get_incident_service

    for index, entry in enumerate(seed.get("incidents", [])):
        reporter = VoterIdentity.model_validate(entry.pop("reporter"))
        draft = IncidentDraft.model_validate(entry)
        logger.info(f"Preparing incident #{index}: {draft.title} ({draft.type.value}) by {reporter.key}")
        if not apply:
            continue

        if reporter.kind is VoterKind.GUEST and reporter.id == "new":
            reporter = VoterIdentity.guest(get_guest_service().create_guest().id)
        try:
            incident, candidates = get_incident_service().create_incident(draft, reporter)
            logger.info(f"Wrote: incidents/{incident.id} ({len(candidates)} duplicate candidate(s))")
        except EngineError as e:
            logger.error(f"Failed to write incident #{index}: {e.code} {e.message}")


def main():
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    parser = argparse.ArgumentParser()
    parser.add_argument("--apply", action="store_true", help="Write seed to the store instead of dry-run")
    parser.add_argument("--force-mock", action="store_true", help="Force the in-memory store even if Firebase is configured")
    args = parser.parse_args()

    seed_path = os.path.join(os.getcwd(), "db_seed.json")
    if not os.path.exists(seed_path):
        logger.error(f"Seed file not found: {seed_path}")
        return

    seed = load_seed(seed_path)

    if args.force_mock:
        logger.info("Forcing in-memory store for this run.")
        # Settings are read once at import; the store singleton is created lazily afterwards
        settings.USE_MOCK_DB = True

    write_to_store(seed, apply=args.apply)

    if args.apply:
        logger.info("Seeding completed.")
    else:
        logger.info("Dry run complete. Re-run with --apply to write to the store.")


if __name__ == "__main__":
    main()
