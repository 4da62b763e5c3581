"""Tests for METAR parsing and truth temperature derivation."""

from datetime import UTC, datetime

import pytest

from heatline.errors import ParseError
from heatline.ingestion.metar import (
    derive_truth_temp,
    extract_obs_zulu_stamp,
    extract_temp_c,
    is_corrected,
    normalize,
    parse_awc_metar_json,
    parse_integer_temp_c,
    parse_nws_metar_text,
    parse_tgroup_temp_c,
    round_to_whole_degree,
    to_fahrenheit,
    zulu_stamp_to_utc,
)
from heatline.models import ExtractionSource, RoundingRule, TempExtraction

METAR_TGROUP_POSITIVE = "KORD 171951Z 18012G18KT 10SM FEW045 SCT250 05/M02 A2992 RMK AO2 SLP133 T00501017"
METAR_TGROUP_NEGATIVE = "KORD 060251Z 31012KT 10SM CLR M07/M12 A3015 RMK AO2 SLP213 T10671117"
METAR_NO_TGROUP = "KORD 271651Z 23011KT 10SM FEW050 SCT250 15/02 A3004 RMK AO2 SLP172"
METAR_NEGATIVE_INTEGER_ONLY = "KORD 081651Z 35015KT 10SM CLR M02/M09 A3045 RMK AO2"


class TestExtraction:
    def test_tgroup_positive_and_negative(self) -> None:
        assert parse_tgroup_temp_c(METAR_TGROUP_POSITIVE) == 5.0
        assert parse_tgroup_temp_c(METAR_TGROUP_NEGATIVE) == -6.7
        assert parse_tgroup_temp_c(METAR_NO_TGROUP) is None

    def test_integer_group(self) -> None:
        assert parse_integer_temp_c(METAR_TGROUP_NEGATIVE) == -7
        assert parse_integer_temp_c(METAR_NO_TGROUP) == 15
        assert parse_integer_temp_c(METAR_NEGATIVE_INTEGER_ONLY) == -2

    def test_tgroup_preferred_uses_tgroup(self) -> None:
        extracted = extract_temp_c(METAR_TGROUP_NEGATIVE, TempExtraction.TGROUP_PREFERRED)
        assert extracted.temp_c == -6.7
        assert extracted.source is ExtractionSource.TGROUP

    def test_tgroup_preferred_falls_back_to_integer(self) -> None:
        extracted = extract_temp_c(METAR_NO_TGROUP, TempExtraction.TGROUP_PREFERRED)
        assert extracted.temp_c == 15
        assert extracted.source is ExtractionSource.INTEGER_GROUP

    def test_integer_only_ignores_tgroup(self) -> None:
        extracted = extract_temp_c(METAR_TGROUP_NEGATIVE, "INTEGER_ONLY")
        assert extracted.temp_c == -7
        assert extracted.source is ExtractionSource.INTEGER_GROUP

    def test_missing_temperature_raises(self) -> None:
        with pytest.raises(ParseError):
            extract_temp_c("KORD 271651Z 23011KT 10SM FEW050 A3004 RMK AO2")

    def test_unknown_method_raises(self) -> None:
        with pytest.raises(ParseError):
            extract_temp_c(METAR_NO_TGROUP, "NOT_A_METHOD")

    def test_empty_report_raises(self) -> None:
        with pytest.raises(ParseError):
            normalize("   ")

    def test_normalize_strips_sentinel_and_whitespace(self) -> None:
        assert normalize("  KORD 271651Z   23011KT  15/02= ") == "KORD 271651Z 23011KT 15/02"


class TestRounding:
    def test_fahrenheit_conversion(self) -> None:
        assert to_fahrenheit(0) == 32
        assert to_fahrenheit(15) == 59

    def test_rules(self) -> None:
        minus_two = to_fahrenheit(-2)  # 28.4
        assert round_to_whole_degree(minus_two, RoundingRule.NEAREST) == 28
        assert round_to_whole_degree(minus_two, RoundingRule.FLOOR) == 28
        assert round_to_whole_degree(minus_two, RoundingRule.CEIL) == 29

    def test_nearest_rounds_half_up(self) -> None:
        assert round_to_whole_degree(32.5, "NEAREST") == 33
        assert round_to_whole_degree(32.49, "NEAREST") == 32
        assert round_to_whole_degree(-0.5, "NEAREST") == 0

    def test_floor_and_ceil(self) -> None:
        assert round_to_whole_degree(32.1, "FLOOR") == 32
        assert round_to_whole_degree(32.1, "CEIL") == 33

    def test_max_of_rounded_uses_window(self) -> None:
        assert round_to_whole_degree(31.49, RoundingRule.MAX_OF_ROUNDED, [31.51, 31.4]) == 32

    def test_max_of_rounded_without_window(self) -> None:
        assert round_to_whole_degree(31.49, RoundingRule.MAX_OF_ROUNDED) == 31

    def test_non_finite_raises(self) -> None:
        with pytest.raises(ParseError):
            round_to_whole_degree(float("nan"))

    def test_derive_truth_temp(self) -> None:
        tgroup = derive_truth_temp(METAR_TGROUP_NEGATIVE, "TGROUP_PREFERRED", "NEAREST")
        integer = derive_truth_temp(METAR_TGROUP_NEGATIVE, "INTEGER_ONLY", "NEAREST")
        assert tgroup.temp_whole_f == 20
        assert integer.temp_whole_f == 19


class TestStamps:
    def test_extract_zulu_stamp(self) -> None:
        assert extract_obs_zulu_stamp(METAR_TGROUP_POSITIVE) == "171951Z"
        assert extract_obs_zulu_stamp("KORD AUTO METAR WITHOUT VALID ZULU GROUP") is None

    def test_is_corrected(self) -> None:
        assert is_corrected("KORD 021200Z COR 00000KT 10SM CLR 10/00")
        assert not is_corrected(METAR_NO_TGROUP)

    def test_stamp_in_reference_month(self) -> None:
        reference = datetime(2026, 7, 15, 20, 0, tzinfo=UTC)
        assert zulu_stamp_to_utc("151951Z", reference) == datetime(2026, 7, 15, 19, 51, tzinfo=UTC)

    def test_stamp_rolls_back_a_month(self) -> None:
        reference = datetime(2026, 8, 1, 0, 30, tzinfo=UTC)
        assert zulu_stamp_to_utc("312351Z", reference) == datetime(2026, 7, 31, 23, 51, tzinfo=UTC)

    def test_stamp_rolls_forward_a_month(self) -> None:
        reference = datetime(2026, 7, 31, 23, 58, tzinfo=UTC)
        assert zulu_stamp_to_utc("010003Z", reference) == datetime(2026, 8, 1, 0, 3, tzinfo=UTC)

    def test_invalid_stamp_returns_reference(self) -> None:
        reference = datetime(2026, 7, 15, 20, 0, tzinfo=UTC)
        assert zulu_stamp_to_utc("garbage", reference) == reference


class TestSourcePayloads:
    def test_nws_text(self) -> None:
        payload = f"\n2026/02/18 19:51\n{METAR_TGROUP_POSITIVE}\n"
        parsed = parse_nws_metar_text(payload)
        assert parsed.source == "NWS"
        assert parsed.raw_metar == METAR_TGROUP_POSITIVE
        assert parsed.obs_zulu_stamp == "171951Z"

    def test_nws_text_without_metar_raises(self) -> None:
        with pytest.raises(ParseError):
            parse_nws_metar_text("2026/02/18 19:51\nno report here\n")

    def test_awc_prefers_obs_time(self) -> None:
        parsed = parse_awc_metar_json([{"rawOb": METAR_TGROUP_POSITIVE, "obsTime": "2026-02-18T03:05:00Z"}])
        assert parsed.source == "AWC"
        assert parsed.raw_metar == METAR_TGROUP_POSITIVE
        assert parsed.obs_zulu_stamp == "180305Z"

    def test_awc_epoch_obs_time(self) -> None:
        epoch = int(datetime(2026, 2, 18, 3, 5, tzinfo=UTC).timestamp())
        parsed = parse_awc_metar_json([{"rawOb": METAR_TGROUP_POSITIVE, "obsTime": epoch}])
        assert parsed.obs_zulu_stamp == "180305Z"

    def test_awc_falls_back_to_report_stamp(self) -> None:
        parsed = parse_awc_metar_json({"data": [{"rawOb": METAR_NO_TGROUP}]})
        assert parsed.obs_zulu_stamp == "271651Z"

    def test_awc_missing_raw_text_raises(self) -> None:
        with pytest.raises(ParseError):
            parse_awc_metar_json([{"obsTime": "2026-02-18T03:05:00Z"}])

    def test_awc_empty_list_raises(self) -> None:
        with pytest.raises(ParseError):
            parse_awc_metar_json([])
