"""CLI script to load certifications, topics and questions into the backend DB.
Usage: python scripts/seed_content.py [--file PATH] [--dry-run]
"""
import sys
import argparse
import pathlib
from typing import Optional
# Ensure `backend/` is on sys.path so `certquiz` package imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from certquiz.database import engine, create_db_and_tables
from certquiz import services
from certquiz.utils.content_loader import load_content_bundle

DEFAULT_FILE = ROOT / 'data' / 'sample_content.json'


def main(path: Optional[pathlib.Path] = None, dry_run: bool = False) -> int:
    """Import the bundle at `path` (defaults to the shipped sample content).

    Results are printed to stdout for a quick CLI feedback loop. Returns
    a process exit code.
    """
    path = path or DEFAULT_FILE
    if not path.exists():
        print(f'Content file not found at {path}')
        return 1
    try:
        bundle = load_content_bundle(path)
    except ValueError as e:
        print(f'Invalid content file {path}: {e}')
        return 1
    create_db_and_tables()
    with Session(engine) as session:
        result = services.ContentImportService(session).import_bundle(bundle, dry_run=dry_run)
    prefix = '[dry run] ' if dry_run else ''
    print(f"{prefix}Imported {path}: created {result['created']}, skipped {result['skipped']}, errors {len(result['errors'])}")
    for err in result['errors']:
        print(f'  error: {err}')
    return 0


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('--file', type=pathlib.Path, help='JSON content bundle to import')
    parser.add_argument('--dry-run', action='store_true', help='Validate without writing to the database')
    args = parser.parse_args()
    sys.exit(main(path=args.file, dry_run=args.dry_run))
