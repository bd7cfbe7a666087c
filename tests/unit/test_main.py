import pytest

from listing_sync.main import parse_args, run


@pytest.mark.unit
def test_cli_returns_non_zero_for_invalid_role(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code = run(["--role", "bad-role", "--dry-run-startup"])
    captured = capsys.readouterr()

    assert exit_code == 2
    assert "ERROR:" in captured.err
    assert "Supported roles" in captured.err


@pytest.mark.unit
@pytest.mark.parametrize("role", ["api", "coordinator", "worker", "verifier"])
def test_cli_dry_run_succeeds_for_valid_role(role: str) -> None:
    exit_code = run(["--role", role, "--dry-run-startup"])
    assert exit_code == 0


@pytest.mark.unit
def test_cli_accepts_run_id_and_serve_flags() -> None:
    args = parse_args(["--role", "worker", "--run-id", "worker-7", "--serve", "--port", "9000"])

    assert args.run_id == "worker-7"
    assert args.serve is True
    assert args.port == 9000
