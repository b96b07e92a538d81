import contextlib
import io
import json
import tempfile
import unittest
from pathlib import Path

from PIL import Image

from card_catalog.main import CardCatalogApp, format_draft, main
from card_catalog.intake import review_result
from card_catalog.logger import CONSOLE_HANDLER, FILE_HANDLER, setup_logging
from card_catalog.models import FieldConfidence, RecognitionAttempt


class TestFormatDraft(unittest.TestCase):
    def test_marks_uncertain_fields(self) -> None:
        result = RecognitionAttempt.from_fields("fallback", {
            "player_name": FieldConfidence("Josh Hader", 0.5),
            "year": FieldConfidence("2018", 0.8),
        })
        text = format_draft(review_result(b"", result))
        self.assertIn("method: fallback", text)
        player_line = next(line for line in text.splitlines() if "Josh Hader" in line)
        self.assertIn("please verify", player_line)

    def test_failure(self) -> None:
        text = format_draft(review_result(b"", RecognitionAttempt.failure("failed", "Recognition cancelled")))
        self.assertTrue(text.startswith("FAILED (Recognition cancelled)"))


class TestCli(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.config = root / "config.yaml"
        self.config.write_text(
            "app:\n"
            "  mock_mode: true\n"
            "  mock_seed: 5\n"
            f"  log_dir: {root / 'logs'}\n"
            f"  audit_dir: {root / 'audit'}\n"
            "images:\n"
            f"  local_dir: {root / 'images'}\n",
            encoding="utf-8",
        )
        self.image = root / "card.png"
        Image.new("RGB", (20, 28)).save(self.image)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_recognize_json_output(self) -> None:
        out = io.StringIO()
        err = io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            code = main(["--config", str(self.config), "recognize", str(self.image), "--json"])

        payload = json.loads(out.getvalue())
        self.assertIn("Initializing card catalog", err.getvalue())
        self.assertIn(payload["method"], ("primary", "fallback", "failed"))
        self.assertEqual(code, 0 if payload["success"] else 1)

    def test_missing_image(self) -> None:
        code = main(["--config", str(self.config), "recognize", str(Path(self.tmp.name) / "missing.png")])
        self.assertEqual(code, 2)

    def test_trends_with_empty_catalog(self) -> None:
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            code = main(["--config", str(self.config), "trends"])
        self.assertEqual(code, 0)
        self.assertIn("No price history yet", out.getvalue())

    def test_mock_app_uses_local_stores(self) -> None:
        app = CardCatalogApp.from_path(self.config)
        self.assertEqual(app.orchestrator.primary.name, "mock")
        self.assertEqual(type(app.catalog).__name__, "InMemoryCatalogStore")


class TestSetupLogging(unittest.TestCase):
    def test_repeat_setup_replaces_handlers(self) -> None:
        with tempfile.TemporaryDirectory() as first, tempfile.TemporaryDirectory() as second:
            setup_logging(first)
            logger = setup_logging(second, console=False)
            ours = [h for h in logger.handlers if h.get_name() in (CONSOLE_HANDLER, FILE_HANDLER)]
            try:
                self.assertEqual([h.get_name() for h in ours], [FILE_HANDLER])
                self.assertEqual(Path(ours[0].baseFilename).parent, Path(second))
            finally:
                for handler in ours:
                    logger.removeHandler(handler)
                    handler.close()


if __name__ == "__main__":
    unittest.main()
