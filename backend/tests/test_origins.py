import os
import sys
import unittest

# Ensure the backend directory is on the import path
CURRENT_DIR = os.path.dirname(os.path.abspath(__file__))
BACKEND_DIR = os.path.abspath(os.path.join(CURRENT_DIR, ".."))
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)

from scanner_bridge.core.config import Settings  # noqa: E402
from scanner_bridge.core.origins import is_origin_allowed  # noqa: E402


class OriginAdmissionTests(unittest.TestCase):
    def test_missing_origin_is_always_admitted(self):
        self.assertTrue(is_origin_allowed(None, []))
        self.assertTrue(is_origin_allowed("", ["https://app.example.com"]))

    def test_wildcard_port_pattern(self):
        allowed = ["http://localhost:*"]
        self.assertTrue(is_origin_allowed("http://localhost:5173", allowed))
        self.assertTrue(is_origin_allowed("http://localhost:3000", allowed))
        self.assertFalse(is_origin_allowed("http://evil.com", allowed))
        self.assertFalse(is_origin_allowed("https://localhost:5173", allowed))

    def test_exact_match_only_for_plain_entries(self):
        allowed = ["https://app.example.com"]
        self.assertTrue(is_origin_allowed("https://app.example.com", allowed))
        self.assertFalse(is_origin_allowed("https://app.example.com.evil.net", allowed))

    def test_pattern_characters_are_literal(self):
        allowed = ["https://*.example.com"]
        self.assertTrue(is_origin_allowed("https://scan.example.com", allowed))
        self.assertFalse(is_origin_allowed("https://scanXexampleYcom", allowed))

    def test_comma_separated_setting(self):
        config = Settings(ALLOWED_ORIGINS="http://localhost:*, https://app.example.com,,")
        self.assertEqual(config.allowed_origins, ["http://localhost:*", "https://app.example.com"])
        self.assertTrue(is_origin_allowed("https://app.example.com", config.allowed_origins))
        self.assertFalse(is_origin_allowed("https://other.example.com", config.allowed_origins))


if __name__ == "__main__":
    unittest.main()
