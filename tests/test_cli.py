import re
import socket

import pytest

from tunnelstress import h2conn
from tunnelstress.cli import main, parse_duration, run_stress_test
from tunnelstress.report import format_duration


def _closed_addr():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return f"127.0.0.1:{s.getsockname()[1]}"


def test_parse_duration_combined_units():
    assert parse_duration("1h2m3.5s") == 3723.5


def test_parse_duration_zero_and_sign():
    assert parse_duration("0") == 0.0
    assert parse_duration("-1m") == -parse_duration("1m")
    assert parse_duration("+1m") == parse_duration("1m")


def test_parse_duration_unit_ratios():
    assert parse_duration("1m") == 60 * parse_duration("1s")
    assert parse_duration("1h") == 60 * parse_duration("1m")
    assert parse_duration("1000ms") == pytest.approx(parse_duration("1s"))
    assert parse_duration("1us") == pytest.approx(parse_duration("1µs"))


@pytest.mark.parametrize("seconds", [0.25, 2.5, 90.0, 3723.5, 0.000001])
def test_parse_duration_round_trips_format(seconds):
    assert parse_duration(format_duration(seconds)) == pytest.approx(seconds)


@pytest.mark.parametrize("text", ["", "10", "abc", "5x", "1s5", "-"])
def test_parse_duration_rejects(text):
    with pytest.raises(ValueError, match="invalid duration"):
        parse_duration(text)


def test_run_stress_test_validates_arguments():
    with pytest.raises(ValueError, match="tunnels must be > 0"):
        run_stress_test(0, 1.0, 1.0, "p:1", "t:2", False)
    with pytest.raises(ValueError, match="rate must be > 0"):
        run_stress_test(2, 0.0, 1.0, "p:1", "t:2", False)


def test_run_stress_test_counts_dial_failures():
    agg = run_stress_test(3, 1.0, 5.0, _closed_addr(), "127.0.0.1:1", False)
    assert agg.tunnel_count == 3
    assert agg.total_errors == 3
    assert agg.total_samples == 0


def test_run_stress_test_multiplex_dial_failure():
    with pytest.raises(h2conn.H2ConnError, match="h2 multiplexed dial"):
        run_stress_test(2, 1.0, 5.0, _closed_addr(), "127.0.0.1:1", True)


def test_main_rejects_nonpositive_tunnels(capsys):
    assert main(["-k", "0"]) == 1
    assert "tunnels must be > 0" in capsys.readouterr().err


def test_main_rejects_nonpositive_rate(capsys):
    assert main(["-m", "0"]) == 1
    assert "rate must be > 0" in capsys.readouterr().err


def test_main_rejects_bad_duration():
    with pytest.raises(SystemExit) as info:
        main(["--duration", "bogus"])
    assert info.value.code == 2


def test_main_prints_report_for_failed_tunnels(capsys):
    code = main(["-k", "2", "-d", "1s", "-p", _closed_addr()])
    out = capsys.readouterr().out
    assert code == 0
    assert "Starting stress test" in out
    assert "Mode:      independent connections" in out
    assert "HTTP/2 CONNECT TUNNEL STRESS TEST REPORT" in out
    assert re.search(r"Errors:\s+2\n", out)


def test_main_multiplex_failure_exits(capsys):
    code = main(["-k", "2", "-d", "1s", "-p", _closed_addr(), "--h2-multiplex"])
    captured = capsys.readouterr()
    assert code == 1
    assert "single TCP connection (h2 multiplex)" in captured.out
    assert "h2 multiplexed dial" in captured.err