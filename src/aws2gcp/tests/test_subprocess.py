"""Tests for the gcloud subprocess wrapper."""

import sys

import pytest


class TestRunCommand:
    def test_captures_output(self):
        from aws2gcp.utils.subprocess import run_command

        result = run_command([sys.executable, "-c", "import sys; print('out'); print('err', file=sys.stderr)"])

        assert result.success
        assert result.stdout.strip() == "out"
        assert result.output == "out\n\nerr"

    def test_failure_raises_with_result(self):
        from aws2gcp.utils.subprocess import CommandError, run_command

        with pytest.raises(CommandError) as excinfo:
            run_command([sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(3)"])
        assert excinfo.value.result.returncode == 3
        assert "boom" in str(excinfo.value)

    def test_no_check(self):
        from aws2gcp.utils.subprocess import run_command

        result = run_command([sys.executable, "-c", "raise SystemExit(1)"], check=False)
        assert not result.success

    def test_extra_env(self):
        from aws2gcp.utils.subprocess import run_command

        result = run_command(
            [sys.executable, "-c", "import os; print(os.environ['AWS2GCP_TEST'])"],
            env={"AWS2GCP_TEST": "merged"},
        )
        assert result.stdout.strip() == "merged"

    def test_timeout(self):
        from aws2gcp.utils.subprocess import run_command

        with pytest.raises(TimeoutError):
            run_command([sys.executable, "-c", "import time; time.sleep(5)"], timeout=1)


class TestRedaction:
    def test_redacts_secret_values(self):
        from aws2gcp.utils.subprocess import _redact_sensitive

        cmd = ["gcloud", "auth", "--key-file=/secrets/sa.json", "--token", "abc", "--project=p"]
        assert _redact_sensitive(cmd) == [
            "gcloud", "auth", "--key-file=[REDACTED]", "--token", "[REDACTED]", "--project=p",
        ]
