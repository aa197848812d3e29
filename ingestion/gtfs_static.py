"""
Decodes an uploaded GTFS static archive into in-memory tables.

Feed contents used:
  trips.txt       → trips       (required)
  stop_times.txt  → stop_times  (required)
  stops.txt       → stops       (required)
  shapes.txt      → shapes      (required)
  routes.txt      → routes      (optional, labels only)

Every column is read as a string with blanks as "".  Numeric conversion
happens where a value is used; malformed rows are skipped there.
Rows that are blank in every column are dropped.
"""

import io
import logging
import zipfile
from dataclasses import dataclass

import pandas as pd

from timetable.index import TableIndex

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("trips.txt", "stop_times.txt", "stops.txt", "shapes.txt")
OPTIONAL_TABLES = ("routes.txt",)


class FeedError(ValueError):
    """The archive cannot produce the tables the planner needs."""


@dataclass
class GtfsTables:
    trips: pd.DataFrame
    stop_times: pd.DataFrame
    stops: pd.DataFrame
    shapes: pd.DataFrame
    routes: pd.DataFrame


def parse_tables(zip_bytes: bytes) -> GtfsTables:
    """
    Extract the GTFS zip into DataFrames.

    Raises:
        FeedError: If the bytes are not a zip archive, a required table is
                   missing, or a required table has no records.
    """
    if not zip_bytes:
        raise FeedError("The uploaded file is empty (0 bytes).")
    try:
        zf = zipfile.ZipFile(io.BytesIO(zip_bytes))
    except zipfile.BadZipFile as exc:
        raise FeedError(f"The uploaded file isn't a valid ZIP archive or is corrupted ({exc}).") from exc

    with zf:
        names = set(zf.namelist())
        logger.info("GTFS zip contains: %s", sorted(names))

        def read(filename: str) -> pd.DataFrame:
            with zf.open(filename) as f:
                try:
                    df = pd.read_csv(f, dtype=str, skipinitialspace=True).fillna("")
                except pd.errors.EmptyDataError:
                    return pd.DataFrame()
            df.columns = [c.lstrip("\ufeff").strip() for c in df.columns]
            if df.empty:
                return df
            non_blank = df.apply(lambda col: col.str.strip() != "").any(axis=1)
            return df[non_blank].reset_index(drop=True)

        tables: dict[str, pd.DataFrame] = {}
        for filename in REQUIRED_TABLES:
            if filename not in names:
                raise FeedError(
                    f"Missing file in GTFS zip: {filename}. The archive must include "
                    + ", ".join(REQUIRED_TABLES) + "."
                )
            df = read(filename)
            if df.empty:
                raise FeedError(f"The file '{filename}' is present but contains no records.")
            tables[filename] = df
            logger.info("Read %d rows from %s.", len(df), filename)

        routes = read("routes.txt") if "routes.txt" in names else pd.DataFrame()

    return GtfsTables(
        trips=tables["trips.txt"],
        stop_times=tables["stop_times.txt"],
        stops=tables["stops.txt"],
        shapes=tables["shapes.txt"],
        routes=routes,
    )


def load_feed(zip_bytes: bytes) -> TableIndex:
    """Decode the archive and build the lookup index in one step."""
    tables = parse_tables(zip_bytes)
    index = TableIndex.from_tables(tables)
    logger.info(
        "Feed loaded: %d routes, %d trips, %d stops, %d shapes.",
        len(index.route_ids),
        len(index.trips),
        len(index.stops),
        len(index.shapes),
    )
    return index
