"""Tests for the CLI entry point."""

import json
import tempfile
from pathlib import Path

from click.testing import CliRunner

from scrolltrack.cli import (
    format_duration,
    format_relative_time,
    iter_events,
    main,
    parse_event,
    read_events,
)
from scrolltrack.dates import HOUR_MS, local_date_string, start_of_day_ms
from scrolltrack.db import EventStore
from scrolltrack.models import EventType, RawEvent

FEED = "com.example.feed"
CHAT = "com.example.chat"
DATE = "2025-01-25"
T0 = start_of_day_ms(DATE) + 10 * HOUR_MS


def event_line(event_type, t, package=FEED, **extra) -> str:
    """One JSONL line for an event t milliseconds after T0."""
    return json.dumps({
        "package_name": package,
        "event_type": event_type,
        "timestamp_ms": T0 + t,
        "local_date_string": DATE,
        "source": "device.usage",
        **extra,
    })


def morning_lines() -> str:
    lines = [
        event_line("user_present", 0, "android"),
        event_line("activity_resumed", 1_000),
        event_line("scroll_measured", 2_000, scroll_delta_y=50),
        event_line("scroll_measured", 3_000, scroll_delta_y=70),
        event_line("activity_paused", 61_000),
        event_line("screen_non_interactive", 62_000, "android"),
    ]
    return "\n".join(lines) + "\n"


def test_main_help():
    """Test that --help works and shows the group description."""
    runner = CliRunner()
    result = runner.invoke(main, ["--help"])
    assert result.exit_code == 0
    assert "ScrollTrack local CLI" in result.output


def test_main_no_args():
    """Click groups exit with code 2 when no subcommand is provided."""
    result = CliRunner().invoke(main, [])
    assert result.exit_code == 2
    assert "Usage:" in result.output


class TestParseEvent:
    def test_local_date_filled_from_timestamp(self):
        event = parse_event({"package_name": FEED, "event_type": "activity_resumed", "timestamp_ms": T0})
        assert event.local_date_string == local_date_string(T0)

    def test_legacy_integer_event_type(self):
        event = parse_event({"package_name": FEED, "event_type": 5, "timestamp_ms": T0, "local_date_string": DATE})
        assert event.event_type == EventType.ACTIVITY_RESUMED


class TestImportCommand:
    """Tests for the import command."""

    def test_import_events(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"

            runner = CliRunner()
            result = runner.invoke(main, ["import", "--db", str(db_path)], input=morning_lines())

            assert result.exit_code == 0
            assert "Imported 6 events" in result.output

            with EventStore.open(db_path) as store:
                assert len(store.get_events()) == 6

    def test_import_idempotent(self):
        """Same events imported twice result in no duplicates."""
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"
            runner = CliRunner()

            result1 = runner.invoke(main, ["import", "--db", str(db_path)], input=morning_lines())
            assert "Imported 6 events" in result1.output

            result2 = runner.invoke(main, ["import", "--db", str(db_path)], input=morning_lines())
            assert result2.exit_code == 0
            assert "Imported 0 events" in result2.output

    def test_import_skips_bad_lines(self):
        """Malformed JSON and unknown event types are skipped with a warning."""
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"
            input_data = "\n".join([
                event_line("activity_resumed", 0),
                "not valid json",
                event_line("teleported", 10),
                event_line("activity_paused", 20),
            ]) + "\n"

            result = CliRunner().invoke(main, ["import", "--db", str(db_path)], input=input_data)

            assert result.exit_code == 0
            assert "Imported 2 events" in result.output
            assert "Warning: line 2: invalid JSON" in result.output
            assert "Warning: line 3: validation error" in result.output

    def test_import_empty_input(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"
            result = CliRunner().invoke(main, ["import", "--db", str(db_path)], input="\n\n")
            assert result.exit_code == 0
            assert "Imported 0 events" in result.output

    def test_import_all_invalid_exits_nonzero(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"
            result = CliRunner().invoke(main, ["import", "--db", str(db_path)], input="garbage\n{}\n")
            assert result.exit_code == 1
            assert "Imported 0 events" in result.output


class TestProcessAndReport:
    """Tests for the process and report commands."""

    def import_morning(self, db_path):
        result = CliRunner().invoke(main, ["import", "--db", str(db_path)], input=morning_lines())
        assert result.exit_code == 0

    def test_process_reports_counts(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"
            self.import_morning(db_path)

            result = CliRunner().invoke(main, ["process", "--db", str(db_path), "--date", DATE])

            assert result.exit_code == 0
            assert f"Processed {DATE}:" in result.output
            assert "Scroll sessions: 1" in result.output
            assert "Unlock sessions: 1" in result.output
            assert "Apps with usage: 1" in result.output

            with EventStore.open(db_path) as store:
                sessions = store.get_scroll_sessions(DATE)
                assert [s.scroll_amount for s in sessions] == [120]
                assert store.get_app_usage(DATE)[0].usage_time_millis == 60_000

    def test_process_twice_same_rows(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"
            self.import_morning(db_path)
            runner = CliRunner()

            runner.invoke(main, ["process", "--db", str(db_path), "--date", DATE])
            first = runner.invoke(main, ["report", "--db", str(db_path), "--date", DATE, "--json"])
            runner.invoke(main, ["process", "--db", str(db_path), "--date", DATE])
            second = runner.invoke(main, ["report", "--db", str(db_path), "--date", DATE, "--json"])

            assert first.stdout == second.stdout

    def test_process_hide_option(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"
            self.import_morning(db_path)

            result = CliRunner().invoke(
                main, ["process", "--db", str(db_path), "--date", DATE, "--hide", FEED]
            )

            assert result.exit_code == 0
            assert "Scroll sessions: 0" in result.output
            assert "Apps with usage: 0" in result.output

    def test_process_with_config_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"
            config_path = Path(tmpdir) / "config.yaml"
            config_path.write_text(f"hidden_packages:\n  - {FEED}\n")
            self.import_morning(db_path)

            result = CliRunner().invoke(
                main, ["process", "--db", str(db_path), "--date", DATE, "--config", str(config_path)]
            )

            assert result.exit_code == 0
            assert "Apps with usage: 0" in result.output

    def test_process_bad_config_exits_nonzero(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"
            config_path = Path(tmpdir) / "config.yaml"
            config_path.write_text("no_such_threshold: 5\n")
            self.import_morning(db_path)

            result = CliRunner().invoke(
                main, ["process", "--db", str(db_path), "--date", DATE, "--config", str(config_path)]
            )

            assert result.exit_code == 1
            assert "Invalid config" in result.output

    def test_process_invalid_date(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"
            self.import_morning(db_path)
            result = CliRunner().invoke(main, ["process", "--db", str(db_path), "--date", "25/01/2025"])
            assert result.exit_code == 1
            assert "Invalid date format" in result.output

    def test_process_no_database(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "nonexistent.db"
            result = CliRunner().invoke(main, ["process", "--db", str(db_path)])
            assert result.exit_code == 1
            assert "No database found" in result.output

    def test_report_text(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"
            self.import_morning(db_path)
            runner = CliRunner()
            runner.invoke(main, ["process", "--db", str(db_path), "--date", DATE])

            result = runner.invoke(main, ["report", "--db", str(db_path), "--date", DATE])

            assert result.exit_code == 0
            assert f"ScrollTrack Report: {DATE}" in result.output
            assert "Screen time:     1m" in result.output
            assert "Unlocks:         1 (1 intentional, 0 glances)" in result.output
            assert FEED in result.output
            assert "scroll 120" in result.output
            assert "last_app_used: com.example.feed" in result.output

    def test_report_json(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"
            self.import_morning(db_path)
            runner = CliRunner()
            runner.invoke(main, ["process", "--db", str(db_path), "--date", DATE])

            result = runner.invoke(main, ["report", "--db", str(db_path), "--date", DATE, "--json"])

            assert result.exit_code == 0
            data = json.loads(result.stdout)
            assert data["date"] == DATE
            assert data["summary"]["total_unlock_count"] == 1
            assert data["app_usage"][0]["package_name"] == FEED
            assert data["scroll_sessions"][0]["data_type"] == "MEASURED"

    def test_report_unprocessed_date(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"
            self.import_morning(db_path)

            result = CliRunner().invoke(main, ["report", "--db", str(db_path), "--date", "2025-01-20"])

            assert result.exit_code == 0
            assert "No processed data for this date." in result.output


class TestTrackCommand:
    """Tests for live tracking from stdin."""

    def test_track_writes_scroll_sessions(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"
            draft_path = Path(tmpdir) / "draft.json"
            input_data = "\n".join([
                event_line("activity_resumed", 0),
                event_line("scroll_inferred", 1_000, scroll_delta_y=50),
                event_line("activity_resumed", 10_000, CHAT),
                event_line("scroll_measured", 11_000, CHAT, scroll_delta_y=-7),
            ]) + "\n"

            result = CliRunner().invoke(
                main,
                ["track", "--db", str(db_path), "--draft", str(draft_path)],
                input=input_data,
            )

            assert result.exit_code == 0
            assert "Tracked 4 events, wrote 2 scroll sessions" in result.output
            assert not draft_path.exists()

            with EventStore.open(db_path) as store:
                sessions = {s.package_name: s for s in store.get_scroll_sessions(DATE)}
            assert sessions[FEED].scroll_amount == 50
            assert sessions[FEED].session_end_reason == "APP_SWITCH"
            assert sessions[CHAT].scroll_amount == 7
            assert sessions[CHAT].session_end_time == T0 + 11_000

    def test_track_recovers_draft(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"
            draft_path = Path(tmpdir) / "draft.json"
            draft_path.write_text(json.dumps({
                "package_name": CHAT,
                "scroll_amount": 30,
                "scroll_amount_y": 30,
                "start_time": T0 - 60_000,
                "last_update_time": T0 - 30_000,
            }))

            result = CliRunner().invoke(
                main, ["track", "--db", str(db_path), "--draft", str(draft_path)], input=""
            )

            assert result.exit_code == 0
            assert "wrote 1 scroll sessions" in result.output
            with EventStore.open(db_path) as store:
                session = store.get_scroll_sessions(DATE)[0]
            assert session.session_end_reason == "RECOVERED_DRAFT"
            assert not draft_path.exists()

    def test_track_all_invalid_exits_nonzero(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"
            draft_path = Path(tmpdir) / "draft.json"
            result = CliRunner().invoke(
                main, ["track", "--db", str(db_path), "--draft", str(draft_path)], input="nope\n"
            )
            assert result.exit_code == 1
            assert "Warning: line 1: invalid JSON" in result.output

    def test_track_skips_bad_lines_and_keeps_going(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"
            draft_path = Path(tmpdir) / "draft.json"
            input_data = "\n".join([
                event_line("activity_resumed", 0),
                "{not json",
                "",
                json.dumps({"package_name": FEED, "event_type": "scroll_inferred"}),
                event_line("scroll_inferred", 1_000, scroll_delta_y=20),
            ]) + "\n"

            result = CliRunner().invoke(
                main, ["track", "--db", str(db_path), "--draft", str(draft_path)], input=input_data
            )

            assert result.exit_code == 0
            assert "Warning: line 2: invalid JSON" in result.output
            assert "Warning: line 4: validation error" in result.output
            assert "Tracked 2 events, wrote 1 scroll sessions" in result.output


class TestIterEvents:
    """Tests for line-by-line event parsing."""

    def test_yields_before_reading_later_lines(self):
        consumed = []

        def lines():
            for line in [event_line("activity_resumed", 0), "oops", event_line("activity_paused", 5_000)]:
                consumed.append(line)
                yield line

        events = iter_events(lines())
        first = next(events)
        assert first.event_type == EventType.ACTIVITY_RESUMED
        assert len(consumed) == 1
        assert next(events) is None
        assert next(events).timestamp_ms == T0 + 5_000

    def test_read_events_reports_input_seen(self):
        assert read_events(["\n", "  \n"]) == ([], False)
        events, has_input = read_events(["garbage\n"])
        assert events == []
        assert has_input


class TestStatusCommand:
    """Tests for the status command."""

    def test_status_no_database(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "nonexistent.db"
            result = CliRunner().invoke(main, ["status", "--db", str(db_path)])
            assert result.exit_code == 1
            assert "No database found" in result.output

    def test_status_empty_database(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"
            EventStore.open(db_path).close()

            result = CliRunner().invoke(main, ["status", "--db", str(db_path)])

            assert result.exit_code == 0
            assert "No events recorded" in result.output

    def test_status_multiple_sources(self):
        """Sources sorted by most recent first."""
        with tempfile.TemporaryDirectory() as tmpdir:
            db_path = Path(tmpdir) / "test.db"
            with EventStore.open(db_path) as store:
                for source, t in [("device.usage", 0), ("device.usage", 1_000), ("accessibility", 5_000)]:
                    store.insert_event(RawEvent(
                        package_name=FEED,
                        event_type="activity_resumed",
                        timestamp_ms=T0 + t,
                        local_date_string=DATE,
                        source=source,
                    ))

            result = CliRunner().invoke(main, ["status", "--db", str(db_path)])

            assert result.exit_code == 0
            assert "Total events: 3" in result.output
            assert "2 events" in result.output
            assert result.output.find("accessibility") < result.output.find("device.usage")


class TestFormatRelativeTime:
    """Tests for format_relative_time helper."""

    NOW = 1_737_799_200_000

    def test_just_now(self):
        assert format_relative_time(self.NOW - 30_000, now=self.NOW) == "just now"

    def test_boundaries(self):
        assert format_relative_time(self.NOW - 59_000, now=self.NOW) == "just now"
        assert format_relative_time(self.NOW - 60_000, now=self.NOW) == "1 minute ago"
        assert format_relative_time(self.NOW - 3_599_000, now=self.NOW) == "59 minutes ago"
        assert format_relative_time(self.NOW - 3_600_000, now=self.NOW) == "1 hour ago"
        assert format_relative_time(self.NOW - 86_399_000, now=self.NOW) == "23 hours ago"
        assert format_relative_time(self.NOW - 86_400_000, now=self.NOW) == "1 day ago"

    def test_future_timestamp(self):
        """Future timestamp (clock skew) shows 'just now'."""
        assert format_relative_time(self.NOW + 300_000, now=self.NOW) == "just now"


class TestFormatDuration:
    """Tests for format_duration helper."""

    def test_zero_milliseconds(self):
        assert format_duration(0) == "0m"

    def test_sub_minute_positive(self):
        assert format_duration(59_999) == "<1m"

    def test_minutes_only(self):
        assert format_duration(45 * 60_000) == "45m"

    def test_hours_and_minutes(self):
        assert format_duration(65 * 60_000) == "1h  5m"
        assert format_duration(150 * 60_000) == "2h 30m"
