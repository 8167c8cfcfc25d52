import re
import sys
import unittest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import backend_app


class CorsConfigTests(unittest.TestCase):
    def test_wildcard_origins_expand_to_regex(self) -> None:
        allow_origins, allow_regex = backend_app._cors_settings_from_env(
            {"CORS_ALLOW_ORIGINS": "https://*.songs.example"}
        )

        self.assertEqual(allow_origins, [])
        pattern = re.compile(allow_regex or "")
        self.assertIsNotNone(pattern.fullmatch("https://display.songs.example"))
        self.assertIsNone(pattern.fullmatch("https://songs.example"))
        self.assertIsNone(pattern.fullmatch("https://evil.example/display.songs.example"))

    def test_explicit_origins_with_trailing_slash(self) -> None:
        allow_origins, allow_regex = backend_app._cors_settings_from_env(
            {"CORS_ALLOW_ORIGINS": "https://display.songs.example/, https://admin.songs.example"}
        )

        self.assertEqual(allow_origins, ["https://display.songs.example", "https://admin.songs.example"])
        self.assertIsNone(allow_regex)

    def test_configured_regex_is_kept(self) -> None:
        _, allow_regex = backend_app._cors_settings_from_env(
            {"CORS_ALLOW_ORIGIN_REGEX": r"https://localhost:\d+"}
        )

        pattern = re.compile(allow_regex or "")
        self.assertIsNotNone(pattern.fullmatch("https://localhost:5173"))
        self.assertIsNone(pattern.fullmatch("https://example.com"))

    def test_default_regex_when_nothing_configured(self) -> None:
        allow_origins, allow_regex = backend_app._cors_settings_from_env({})

        self.assertEqual(allow_origins, [])
        self.assertIsNotNone(re.compile(allow_regex or "").fullmatch("https://anywhere.example"))


if __name__ == "__main__":
    unittest.main()
