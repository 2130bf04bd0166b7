from datetime import datetime, timedelta, timezone

from datetime_utils import UTC, ensure_utc, from_epoch_ms, now_ms, to_epoch_ms
from helpers.formatting import (
    format_age,
    format_bytes,
    format_sync_time,
    operation_label,
    retry_label,
    table_label,
)


def test_epoch_ms_roundtrip_keeps_utc():
    moment = datetime(2024, 3, 10, 12, 30, tzinfo=UTC)
    assert to_epoch_ms(moment) == 1710073800000
    assert from_epoch_ms(1710073800000) == moment
    assert from_epoch_ms(None) is None


def test_naive_datetimes_are_treated_as_utc():
    naive = datetime(2024, 1, 1, 8, 0)
    assert ensure_utc(naive).tzinfo == UTC
    assert ensure_utc(datetime(2024, 1, 1, 5, 0, tzinfo=timezone(timedelta(hours=-3)))).hour == 8


def test_now_ms_is_current():
    before = to_epoch_ms(datetime.now(UTC))
    value = now_ms()
    assert before <= value <= before + 1000


def test_format_bytes():
    assert format_bytes(0) == "0 B"
    assert format_bytes(512) == "512 B"
    assert format_bytes(1536) == "1.5 KB"
    assert format_bytes(50 * 1024 * 1024) == "50 MB"


def test_format_age():
    now = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
    stamp = to_epoch_ms(now)
    assert format_age(None) == "-"
    assert format_age(stamp - 30_000, now) == "agora"
    assert format_age(stamp - 5 * 60_000, now) == "há 5 min"
    assert format_age(stamp - 3 * 3_600_000, now) == "há 3 h"
    assert format_age(stamp - 86_400_000, now) == "há 1 dia"
    assert format_age(stamp - 3 * 86_400_000, now) == "há 3 dias"


def test_format_sync_time():
    assert format_sync_time(None) == ""
    value = datetime(2024, 5, 1, 10, 5, tzinfo=UTC)
    assert format_sync_time(value) == value.astimezone().strftime("%d/%m às %H:%M")


def test_labels():
    assert table_label("weight_records") == "Registro de peso"
    assert table_label("custom_table") == "custom_table"
    assert operation_label("delete") == "Excluir"
    assert retry_label(0) == ""
    assert retry_label(3) == "3x tentativas"
