# kartogrid/cli.py
"""
Console entry point used to generate grids and inspect projections.

    kartogrid grid --shape hex --level 3 --proj behrmann --aoi "-10,35,30,60"
    kartogrid proj google
    kartogrid proj all
    kartogrid schema
"""

import argparse
import json
import sys
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from .config import DEFAULT_PROJ, DEFAULT_THREADS, LOG_LEVEL, configure_logging, load_config_file
from .db import SessionLocal, init_db, make_engine
from .exceptions import GridError
from .schema import GRID_CELL_SCHEMA
from .services.grid_builder import describe_projection, parse_shape
from .services.grid_job import generate_grid

# Projections worth looking at for global grids
INTERESTING_PROJECTIONS = [
    # Northern/polar
    3408,   # NSIDC EASE-Grid North
    3411,   # NSIDC Sea Ice Polar Stereographic North
    # Southern/polar
    3031,   # Antarctic Polar Stereographic
    3409,   # NSIDC EASE-Grid South
    3412,   # NSIDC Sea Ice Polar Stereographic South
    32761,  # UPS South
    # Global
    3410,   # NSIDC EASE-Grid Global
    4326,   # Geographic
    3395,   # Mercator
    3857,   # Web Mercator (google)
    54017,  # Behrmann Cylindrical Equal Area
]


def _session_factory(config_path: Optional[str]):
    if not config_path:
        init_db()
        return SessionLocal

    cfg = load_config_file(config_path)
    engine = make_engine(cfg["database_url"], pool_size=cfg["pool_size"])
    init_db(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def cmd_grid(args) -> int:
    session_factory = _session_factory(args.config)
    db = session_factory()
    try:
        result = generate_grid(
            db,
            shape=parse_shape(args.shape),
            level=args.level,
            proj=args.proj,
            density=args.density,
            aoi=args.aoi,
            num_threads=args.threads,
            clear=args.clear,
            allow_sql=True,
        )
    finally:
        db.close()

    print(
        f"Generated {result['generated']} {args.shape} cells "
        f"(level {result['level']}, EPSG:{result['proj']}): "
        f"inserted {result['inserted']}, skipped {result['skipped']}, "
        f"cleared {result['deleted']}."
    )
    return 0


def cmd_proj(args) -> int:
    if args.name.lower() != "all":
        print(describe_projection(args.name))
        return 0

    for srid in INTERESTING_PROJECTIONS:
        try:
            print(describe_projection(srid))
        except GridError as e:
            print(f"EPSG:{srid}: {e}", file=sys.stderr)
            continue
        print("------------------------------------")
    return 0


def cmd_schema(args) -> int:
    print(json.dumps(GRID_CELL_SCHEMA.to_dict(), indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kartogrid", description="Generate global grids.")
    parser.add_argument("--log-level", default=LOG_LEVEL, help="Logging level.")
    sub = parser.add_subparsers(dest="command", required=True)

    grid = sub.add_parser("grid", help="Generate grid cells and store them.")
    grid.add_argument(
        "--shape",
        choices=["square", "hex", "hexagon", "diamond"],
        default="square",
        help="Shape of individual grid cells.",
    )
    grid.add_argument("--level", type=int, default=1, help="Grid level (1-9).")
    grid.add_argument(
        "--proj",
        default=DEFAULT_PROJ,
        help="Grid projection: EPSG code or keyword (google, behrmann, mercator).",
    )
    grid.add_argument(
        "--aoi",
        default=None,
        help='Spatial filter in WGS84: WKT, "west,south,east,north", or a SELECT returning one geometry.',
    )
    grid.add_argument("--density", type=float, default=1.0, help="Edge densification factor.")
    grid.add_argument("--threads", "-t", type=int, default=DEFAULT_THREADS, help="Number of threads.")
    grid.add_argument("--clear", action="store_true", help="Delete the existing grid first.")
    grid.add_argument("--config", default=None, help="JSON config file with a database section.")
    grid.set_defaults(func=cmd_grid)

    proj = sub.add_parser("proj", help="Describe a projection.")
    proj.add_argument("name", help='EPSG code, keyword (google, behrmann, mercator), or "all".')
    proj.set_defaults(func=cmd_proj)

    schema = sub.add_parser("schema", help="Print the GridCell descriptor.")
    schema.set_defaults(func=cmd_schema)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    try:
        return args.func(args)
    except GridError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
