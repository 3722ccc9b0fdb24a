from __future__ import annotations

import logging
import os
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Mapping, Tuple
from xml.etree import ElementTree as ET

import requests

GFS_BUCKET = "noaa-gfs-bdp-pds"
GFS_PRODUCT = "pgrb2.0p25"
NUM_EXPECTED_FORECASTS = 209
RUN_INTERVAL_HOURS = 6
MAX_RUNS_TO_TRY = 3
ANCILLARY_SUFFIXES = (".anl", ".idx")
LOGGER = logging.getLogger("gfs_explorer.gfs_data")


class GfsDataError(RuntimeError):
    """Base class for GFS bucket access failures."""


class GfsRequestError(GfsDataError):
    """Raised when a listing or object fetch fails at the transport level."""


class MalformedListingError(GfsDataError):
    """Raised when a bucket listing does not match the ListBucketResult schema."""


class IndexFormatError(GfsDataError):
    """Raised when an index file line cannot be parsed."""


class ObjectNotFoundError(GfsDataError, LookupError):
    """Raised when the bucket reports that a key does not exist."""


class RecordNotFoundError(GfsDataError, LookupError):
    """Raised when no index record matches the requested parameter and level."""


class RunNotFoundError(GfsDataError, LookupError):
    """Raised when none of the probed runs is complete."""


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class GfsConfig:
    bucket: str = GFS_BUCKET
    expected_forecasts: int = NUM_EXPECTED_FORECASTS
    run_interval_hours: int = RUN_INTERVAL_HOURS
    max_runs_to_try: int = MAX_RUNS_TO_TRY
    fetch_timeout_seconds: float = 30.0
    fetch_retries: int = 3
    fetch_backoff_seconds: float = 0.4
    max_listing_pages: int = 10

    @property
    def base_url(self) -> str:
        return f"https://{self.bucket}.s3.amazonaws.com"

    @classmethod
    def from_env(cls) -> GfsConfig:
        return cls(
            bucket=os.getenv("GFS_BUCKET", GFS_BUCKET).strip() or GFS_BUCKET,
            expected_forecasts=_env_int("GFS_EXPECTED_FORECASTS", NUM_EXPECTED_FORECASTS),
            run_interval_hours=_env_int("GFS_RUN_INTERVAL_HOURS", RUN_INTERVAL_HOURS),
            max_runs_to_try=_env_int("GFS_MAX_RUNS_TO_TRY", MAX_RUNS_TO_TRY),
            fetch_timeout_seconds=_env_float("GFS_FETCH_TIMEOUT_SECONDS", 30.0),
            fetch_retries=max(1, _env_int("GFS_FETCH_RETRIES", 3)),
            fetch_backoff_seconds=_env_float("GFS_FETCH_BACKOFF_SECONDS", 0.4),
            max_listing_pages=max(1, _env_int("GFS_MAX_LISTING_PAGES", 10)),
        )


@dataclass(frozen=True)
class ObjectEntry:
    key: str
    last_modified: str
    etag: str
    size: int
    storage_class: str


@dataclass(frozen=True)
class BucketListing:
    name: str
    prefix: str
    key_count: int
    max_keys: int
    is_truncated: bool
    # None when the listing carried no <Contents> at all.
    contents: Tuple[ObjectEntry, ...] | None = None
    next_continuation_token: str | None = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "prefix": self.prefix,
            "key_count": self.key_count,
            "max_keys": self.max_keys,
            "is_truncated": self.is_truncated,
            "contents": None if self.contents is None else [asdict(entry) for entry in self.contents],
        }


@dataclass(frozen=True)
class IndexRecord:
    index: int
    start_byte: int
    stop_byte: int | None
    model_run: str
    parameter: str
    level: str
    forecast_type: str

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass(frozen=True)
class ByteRange:
    start: int
    stop: int | None = None

    @classmethod
    def from_record(cls, record: IndexRecord) -> ByteRange:
        return cls(start=record.start_byte, stop=record.stop_byte)

    def header_value(self) -> str:
        if self.stop is None:
            return f"bytes={self.start}-"
        return f"bytes={self.start}-{self.stop}"


# --- key naming -------------------------------------------------------------


def grib_file_key(year: int, month: int, day: int, hour: int, forecast_hour: int) -> str:
    return (
        f"gfs.{year:04d}{month:02d}{day:02d}/{hour:02d}/atmos/"
        f"gfs.t{hour:02d}z.{GFS_PRODUCT}.f{forecast_hour:03d}"
    )


def grib_index_key(year: int, month: int, day: int, hour: int, forecast_hour: int) -> str:
    return grib_file_key(year, month, day, hour, forecast_hour) + ".idx"


def grib_prefix_for_run(run: datetime) -> str:
    return run.strftime(f"gfs.%Y%m%d/%H/atmos/gfs.t%Hz.{GFS_PRODUCT}")


def grib_file_key_for_run(run: datetime, forecast_hour: int) -> str:
    return grib_file_key(run.year, run.month, run.day, run.hour, forecast_hour)


def grib_index_key_for_run(run: datetime, forecast_hour: int) -> str:
    return grib_index_key(run.year, run.month, run.day, run.hour, forecast_hour)


def run_datetime(year: int, month: int, day: int, hour: int, interval_hours: int = RUN_INTERVAL_HOURS) -> datetime:
    """Build a run timestamp from path components, rejecting impossible or unaligned runs."""
    try:
        run = datetime(int(year), int(month), int(day), int(hour), tzinfo=timezone.utc)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid run date {year}-{month}-{day} {hour}h: {exc}") from exc
    if run.hour % interval_hours != 0:
        raise ValueError(f"Run hour {hour} is not a multiple of {interval_hours}")
    return run


def format_run(run: datetime) -> str:
    return run.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# --- bucket listing ---------------------------------------------------------


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child_text(element: ET.Element, name: str, required: bool = True) -> str | None:
    for child in element:
        if _local_name(child.tag) == name:
            return (child.text or "").strip()
    if required:
        raise MalformedListingError(f"Listing element <{_local_name(element.tag)}> is missing <{name}>")
    return None


def _child_int(element: ET.Element, name: str) -> int:
    raw = _child_text(element, name)
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedListingError(f"Listing field <{name}> is not an integer: {raw!r}") from exc


def _child_bool(element: ET.Element, name: str) -> bool:
    raw = str(_child_text(element, name)).lower()
    if raw not in ("true", "false"):
        raise MalformedListingError(f"Listing field <{name}> is not a boolean: {raw!r}")
    return raw == "true"


def _parse_object_entry(element: ET.Element) -> ObjectEntry:
    return ObjectEntry(
        key=str(_child_text(element, "Key")),
        last_modified=str(_child_text(element, "LastModified")),
        etag=str(_child_text(element, "ETag")).strip('"'),
        size=_child_int(element, "Size"),
        storage_class=str(_child_text(element, "StorageClass")),
    )


def parse_listing(xml: bytes | str) -> BucketListing:
    """Parse an S3 ListObjectsV2 response body.

    A listing without any <Contents> element yields ``contents=None``; that is
    distinct from an empty tuple and means no keys matched the prefix.
    """
    try:
        root = ET.fromstring(xml)
    except ET.ParseError as exc:
        raise MalformedListingError(f"Listing is not valid XML: {exc}") from exc
    if _local_name(root.tag) != "ListBucketResult":
        raise MalformedListingError(f"Unexpected listing root element <{_local_name(root.tag)}>")

    entries = [_parse_object_entry(child) for child in root if _local_name(child.tag) == "Contents"]
    return BucketListing(
        name=str(_child_text(root, "Name")),
        prefix=_child_text(root, "Prefix", required=False) or "",
        key_count=_child_int(root, "KeyCount"),
        max_keys=_child_int(root, "MaxKeys"),
        is_truncated=_child_bool(root, "IsTruncated"),
        contents=tuple(entries) if entries else None,
        next_continuation_token=_child_text(root, "NextContinuationToken", required=False) or None,
    )


def merge_listings(pages: List[BucketListing]) -> BucketListing:
    if not pages:
        raise ValueError("No listing pages to merge")
    first, last = pages[0], pages[-1]
    entries = [entry for page in pages for entry in (page.contents or ())]
    has_contents = any(page.contents is not None for page in pages)
    return BucketListing(
        name=first.name,
        prefix=first.prefix,
        key_count=sum(page.key_count for page in pages),
        max_keys=first.max_keys,
        is_truncated=last.is_truncated,
        contents=tuple(entries) if has_contents else None,
        next_continuation_token=last.next_continuation_token,
    )


def count_forecast_objects(listing: BucketListing) -> int:
    if listing.contents is None:
        return 0
    return sum(1 for entry in listing.contents if not entry.key.endswith(ANCILLARY_SUFFIXES))


def is_run_complete(listing: BucketListing, expected_forecasts: int = NUM_EXPECTED_FORECASTS) -> bool:
    if listing.contents is None:
        return False
    return count_forecast_objects(listing) >= expected_forecasts


# --- run resolution ---------------------------------------------------------


def latest_aligned_run(now: datetime, interval_hours: int = RUN_INTERVAL_HOURS) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    else:
        now = now.astimezone(timezone.utc)
    return now.replace(
        hour=(now.hour // interval_hours) * interval_hours,
        minute=0,
        second=0,
        microsecond=0,
    )


def candidate_runs(
    now: datetime,
    max_runs_to_try: int = MAX_RUNS_TO_TRY,
    interval_hours: int = RUN_INTERVAL_HOURS,
) -> List[datetime]:
    if max_runs_to_try < 1:
        raise ValueError(f"max_runs_to_try must be at least 1, got {max_runs_to_try}")
    latest = latest_aligned_run(now, interval_hours)
    return [latest - timedelta(hours=interval_hours * i) for i in range(max_runs_to_try)]


def resolve_latest_complete_run(
    now: datetime,
    is_complete: Callable[[datetime], bool],
    max_runs_to_try: int = MAX_RUNS_TO_TRY,
    interval_hours: int = RUN_INTERVAL_HOURS,
) -> datetime:
    """Return the newest complete run among the candidates, probing newest first.

    Probes run one at a time and stop at the first complete run. The newest
    aligned run is often still being published, so an older run is reported
    rather than a partial one.
    """
    candidates = candidate_runs(now, max_runs_to_try, interval_hours)
    for run in candidates:
        if is_complete(run):
            return run
        LOGGER.info("Run %s is incomplete; trying previous run", format_run(run))
    raise RunNotFoundError(
        f"No complete GFS run among {len(candidates)} candidates "
        f"from {format_run(candidates[0])} back to {format_run(candidates[-1])}"
    )


# --- index parsing ----------------------------------------------------------


def _parse_index_line(line_number: int, line: str) -> Tuple[int, int, str, str, str, str]:
    body = line.strip()
    # published .idx lines carry one trailing separator
    if body.endswith(":"):
        body = body[:-1]
    fields = body.split(":")
    if len(fields) != 6:
        raise IndexFormatError(f"Index line {line_number} has {len(fields)} fields, expected 6: {line!r}")
    index_raw, start_raw, run_raw, parameter, level, forecast_type = fields
    try:
        index = int(index_raw)
        start_byte = int(start_raw)
    except ValueError as exc:
        raise IndexFormatError(f"Index line {line_number} has a non-numeric index or start byte: {line!r}") from exc
    if index < 0 or start_byte < 0:
        raise IndexFormatError(f"Index line {line_number} has a negative index or start byte: {line!r}")
    model_run = run_raw[2:] if run_raw.startswith("d=") else run_raw
    return index, start_byte, model_run, parameter, level, forecast_type


def parse_index(text: str) -> List[IndexRecord]:
    """Parse a GRIB2 ``.idx`` file into records ordered by ascending index.

    The format only gives start offsets, so each stop byte is the next
    record's start minus one. Lines are folded from last to first carrying
    that next start; the last record stays open-ended (``stop_byte=None``).
    Any malformed line fails the whole parse.
    """
    lines = [(number, line) for number, line in enumerate(text.splitlines(), start=1) if line.strip()]
    records: List[IndexRecord] = []
    next_start: int | None = None
    for line_number, line in reversed(lines):
        index, start_byte, model_run, parameter, level, forecast_type = _parse_index_line(line_number, line)
        if next_start is not None and start_byte >= next_start:
            raise IndexFormatError(
                f"Index line {line_number} starts at byte {start_byte}, "
                f"not before the following record at {next_start}: {line!r}"
            )
        records.append(
            IndexRecord(
                index=index,
                start_byte=start_byte,
                stop_byte=None if next_start is None else next_start - 1,
                model_run=model_run,
                parameter=parameter,
                level=level,
                forecast_type=forecast_type,
            )
        )
        next_start = start_byte
    records.reverse()
    return records


# --- record resolution ------------------------------------------------------


def filter_records(records: Iterable[IndexRecord], query: Mapping[str, str]) -> List[IndexRecord]:
    level = query.get("level")
    parameter = query.get("parameter")
    out = list(records)
    if level is not None:
        out = [record for record in out if record.level == level]
    if parameter is not None:
        wanted = parameter.upper()
        out = [record for record in out if record.parameter == wanted]
    return out


def select_record(records: Iterable[IndexRecord], parameter: str, level: str) -> IndexRecord:
    matches = filter_records(records, {"level": level.lower(), "parameter": parameter})
    if not matches:
        raise RecordNotFoundError(f"No index record for parameter={parameter!r} level={level!r}")
    return matches[0]


def resolve_byte_range(records: Iterable[IndexRecord], parameter: str, level: str) -> ByteRange:
    return ByteRange.from_record(select_record(records, parameter, level))


# --- object storage ---------------------------------------------------------


class GfsStore:
    """Read-only access to the public GFS bucket. Nothing fetched is cached."""

    def __init__(self, config: GfsConfig | None = None) -> None:
        self.config = config or GfsConfig()

    def _get(self, url: str, params: Dict[str, str] | None = None, headers: Dict[str, str] | None = None) -> bytes:
        retries = max(1, self.config.fetch_retries)
        last_exc: Exception | None = None
        for attempt in range(1, retries + 1):
            try:
                LOGGER.debug("GET %s params=%s headers=%s attempt=%d", url, params, headers, attempt)
                response = requests.get(
                    url,
                    params=params,
                    headers=headers,
                    timeout=self.config.fetch_timeout_seconds,
                )
                if response.status_code == 404:
                    raise ObjectNotFoundError(f"Not found in bucket {self.config.bucket}: {url}")
                response.raise_for_status()
                return response.content
            except requests.HTTPError as exc:
                last_exc = exc
                status = exc.response.status_code if exc.response is not None else None
                if status is not None and status < 500:
                    break
            except requests.RequestException as exc:
                last_exc = exc
            if attempt >= retries:
                break
            LOGGER.warning("Fetch failed url=%s attempt=%d/%d: %s", url, attempt, retries, last_exc)
            time.sleep(self.config.fetch_backoff_seconds * (2 ** (attempt - 1)))

        raise GfsRequestError(f"GET {url} failed after {attempt} attempt(s): {last_exc}") from last_exc

    def fetch_listing(self, prefix: str) -> BucketListing:
        params = {"list-type": "2", "prefix": prefix}
        pages: List[BucketListing] = []
        while True:
            page = parse_listing(self._get(f"{self.config.base_url}/", params=dict(params)))
            pages.append(page)
            if not page.is_truncated or not page.next_continuation_token:
                break
            if len(pages) >= self.config.max_listing_pages:
                LOGGER.warning("Listing for prefix=%s still truncated after %d pages", prefix, len(pages))
                break
            params["continuation-token"] = page.next_continuation_token
        listing = merge_listings(pages)
        LOGGER.debug("Listed prefix=%s keys=%d pages=%d", prefix, listing.key_count, len(pages))
        return listing

    def fetch_object(self, key: str, byte_range: ByteRange | None = None) -> bytes:
        headers = {"Range": byte_range.header_value()} if byte_range is not None else None
        return self._get(f"{self.config.base_url}/{key}", headers=headers)

    def run_status(self, run: datetime) -> Dict[str, object]:
        prefix = grib_prefix_for_run(run)
        listing = self.fetch_listing(prefix)
        forecast_count = count_forecast_objects(listing)
        complete = is_run_complete(listing, self.config.expected_forecasts)
        LOGGER.info(
            "Run %s forecasts=%d expected=%d complete=%s",
            format_run(run),
            forecast_count,
            self.config.expected_forecasts,
            complete,
        )
        return {
            "run": format_run(run),
            "prefix": prefix,
            "forecast_count": forecast_count,
            "expected_forecasts": self.config.expected_forecasts,
            "complete": complete,
            "listing": listing.to_dict(),
        }

    def run_is_complete(self, run: datetime) -> bool:
        return bool(self.run_status(run)["complete"])

    def latest_complete_run(self, now: datetime | None = None) -> datetime:
        return resolve_latest_complete_run(
            now or datetime.now(timezone.utc),
            self.run_is_complete,
            max_runs_to_try=self.config.max_runs_to_try,
            interval_hours=self.config.run_interval_hours,
        )

    def index_records(self, run: datetime, forecast_hour: int) -> List[IndexRecord]:
        key = grib_index_key_for_run(run, forecast_hour)
        payload = self.fetch_object(key)
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise IndexFormatError(f"Index {key} is not valid UTF-8 text") from exc
        records = parse_index(text)
        LOGGER.debug("Parsed index key=%s records=%d", key, len(records))
        return records

    def grib_record(
        self,
        run: datetime,
        forecast_hour: int,
        parameter: str,
        level: str,
    ) -> Tuple[IndexRecord, ByteRange, bytes]:
        record = select_record(self.index_records(run, forecast_hour), parameter, level)
        byte_range = ByteRange.from_record(record)
        key = grib_file_key_for_run(run, forecast_hour)
        payload = self.fetch_object(key, byte_range)
        LOGGER.info(
            "Fetched %s:%s from key=%s range=%s bytes=%d",
            record.parameter,
            record.level,
            key,
            byte_range.header_value(),
            len(payload),
        )
        return record, byte_range, payload
