from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]


class ConfigEnvLoadingTests(unittest.TestCase):
    def _run(self, code: str, bot_env_file: str) -> subprocess.CompletedProcess[str]:
        env = os.environ.copy()
        env["BOT_ENV_FILE"] = bot_env_file
        return subprocess.run(
            [sys.executable, "-c", code],
            cwd=str(ROOT),
            env=env,
            capture_output=True,
            text=True,
        )

    def test_missing_bot_env_file_fails_fast(self) -> None:
        result = self._run("import config; print('ok')", "data/__definitely_missing_env_for_test__.env")
        self.assertNotEqual(result.returncode, 0)
        details = (result.stdout + "\n" + result.stderr).lower()
        self.assertIn("bot_env_file", details)
        self.assertIn("does not exist", details)

    def test_dispatch_and_watch_keys_are_loaded_from_env(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            env_path.write_text(
                "\n".join(
                    [
                        "DISPATCH_CONCURRENCY=5",
                        "DISPATCH_POLL_INTERVAL_SECONDS=0.5",
                        "WATCH_TIMEOUT_SECONDS=90",
                        "BASE_ASSET_ADDRESS=0xBB4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c",
                        "EXECUTOR_URL=http://executor.local:8080/",
                        "ENABLE_VOLUME_MONITOR=false",
                    ]
                )
                + "\n",
                encoding="utf-8",
            )
            result = self._run(
                (
                    "import config; "
                    "print(f\"{config.DISPATCH_CONCURRENCY}|{config.DISPATCH_POLL_INTERVAL_SECONDS}|"
                    "{config.WATCH_TIMEOUT_SECONDS}|{config.BASE_ASSET_ADDRESS}|"
                    "{config.EXECUTOR_URL}|{config.ENABLE_VOLUME_MONITOR}\")"
                ),
                str(env_path),
            )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(
            result.stdout.strip(),
            "5|0.5|90.0|0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c|http://executor.local:8080|False",
        )

    def test_out_of_range_values_are_clamped(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            env_path.write_text("DISPATCH_CONCURRENCY=0\nSLIPPAGE=1.7\nDISPATCH_QUEUE_MAX=-3\n", encoding="utf-8")
            result = self._run(
                "import config; print(f'{config.DISPATCH_CONCURRENCY}|{config.SLIPPAGE}|{config.DISPATCH_QUEUE_MAX}')",
                str(env_path),
            )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "1|1.0|0")


if __name__ == "__main__":
    unittest.main()
