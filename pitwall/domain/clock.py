from datetime import datetime, date, time, timedelta, timezone

UTC = timezone.utc
TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
# Au-delà de 4 jours après le début, aucun weekend n'a de sens
WEEKEND_SPAN = timedelta(days=4)

def utcnow() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)

def to_utc(dt: datetime) -> datetime:
    """Les datetimes naïfs sont considérés UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)

def format_ts(dt: datetime) -> str:
    return to_utc(dt).strftime(TS_FORMAT)

def parse_ts(raw: str) -> datetime:
    return datetime.strptime(raw, TS_FORMAT).replace(tzinfo=UTC)

def format_date(d: date) -> str:
    return d.isoformat()  # "YYYY-MM-DD"

def parse_date(raw: str) -> date:
    return date.fromisoformat(raw)

def weekend_span(start_date: date) -> tuple[datetime, datetime]:
    """[début, fin) du weekend en UTC."""
    start = datetime.combine(start_date, time(0, 0), tzinfo=UTC)
    return start, start + WEEKEND_SPAN

def epoch(dt: datetime) -> int:
    return int(to_utc(dt).timestamp())
