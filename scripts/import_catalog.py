import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
from services.catalog_importer import CatalogImporter


def main():
    parser = argparse.ArgumentParser(description="Import a truckload freight catalog into SQLite.")
    parser.add_argument("file", help="Path to a CSV or XLSX catalog export")
    parser.add_argument("--truckload-id", type=int, help="Existing truckload to load the catalog into")
    parser.add_argument("--load-number", default="", help="Load number for a new truckload")
    parser.add_argument("--driver", default="", help="Driver name for a new truckload")
    parser.add_argument("--trailer", default="", help="Trailer number for a new truckload")
    parser.add_argument(
        "--append",
        action="store_true",
        help="Keep existing stops instead of replacing the catalog",
    )
    args = parser.parse_args()
    path = Path(args.file)
    if not path.exists():
        raise SystemExit(f"File not found: {path}")

    db.init_db()
    truckload_id = args.truckload_id
    if truckload_id is None:
        truckload_id = db.add_truckload(
            args.load_number or path.stem,
            args.driver,
            args.trailer,
            f"Imported from {path.name}",
            None,
            None,
        )
    elif not db.get_truckload(truckload_id):
        raise SystemExit(f"Truckload {truckload_id} not found")

    importer = CatalogImporter()
    with path.open("rb") as handle:
        parsed = importer.parse(handle, path.name)
    counts = importer.import_rows(truckload_id, parsed, replace=not args.append)

    print(f"truckload {truckload_id}: {counts['stops']} stops, {counts['units']} units")
    for rejected in parsed["rejected_rows"]:
        print(f"row {rejected['row']} skipped: {rejected['reason']}")


if __name__ == "__main__":
    main()
