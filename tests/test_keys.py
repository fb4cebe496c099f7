import unittest

from sharehost.keys import (
    DEFAULT_EXTENSION,
    generate_api_key,
    generate_public_key,
    generate_storage_filename,
    normalize_extension,
    parse_duration,
)


class KeyGenerationTests(unittest.TestCase):
    def test_api_key_format(self):
        key = generate_api_key("alice")
        self.assertRegex(key, r"^alice_[0-9a-f]{32}$")
        self.assertNotEqual(key, generate_api_key("alice"))

    def test_public_key_is_unpadded_base64url(self):
        keys = {generate_public_key() for _ in range(200)}
        self.assertEqual(len(keys), 200)
        for key in keys:
            self.assertEqual(len(key), 8)
            self.assertRegex(key, r"^[A-Za-z0-9_-]{8}$")

    def test_storage_filename_is_uuid_plus_extension(self):
        name = generate_storage_filename(".gif")
        self.assertTrue(name.endswith(".gif"))
        self.assertRegex(
            name[:-4], r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[0-9a-f]{4}-[0-9a-f]{12}$"
        )

    def test_missing_extension_defaults_to_png(self):
        self.assertTrue(generate_storage_filename("").endswith(DEFAULT_EXTENSION))

    def test_normalize_extension(self):
        self.assertEqual(normalize_extension("txt"), ".txt")
        self.assertEqual(normalize_extension(".tar-gz"), ".tar-gz")
        for bad in ("", ".", "../x", ".a/b", "." + "x" * 17, ".ex e"):
            with self.subTest(extension=bad):
                self.assertEqual(normalize_extension(bad), DEFAULT_EXTENSION)


class ParseDurationTests(unittest.TestCase):
    def test_units(self):
        self.assertEqual(parse_duration("12h"), 12)
        self.assertEqual(parse_duration("1d"), 24)
        self.assertEqual(parse_duration("1d12h"), 36)
        self.assertEqual(parse_duration("2d 3h"), 51)

    def test_unrecognised_input_is_zero(self):
        self.assertEqual(parse_duration("soon"), 0)
        self.assertEqual(parse_duration(""), 0)
        self.assertEqual(parse_duration("5m"), 0)


if __name__ == "__main__":
    unittest.main()
