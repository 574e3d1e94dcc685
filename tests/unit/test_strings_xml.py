import os
import tempfile
import textwrap
import unittest

from src.strings_xml import (
    detect_target_languages,
    language_output_path,
    merge_key_order,
    parse_strings_xml,
    read_string_key_order,
    write_strings_xml,
)


class TestStringsXml(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        self.root = self.temp_dir.name

    def _write(self, relative_path: str, content: str) -> str:
        path = os.path.join(self.root, relative_path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(textwrap.dedent(content).lstrip())
        return path

    def test_parse_strings_xml_extracts_key_value_pairs(self):
        path = self._write("values/strings.xml", """
            <?xml version="1.0" encoding="utf-8"?>
            <resources>
                <string name="app_name">My App</string>
                <!-- a comment -->
                <string name="greeting">Hello</string>
                <plurals name="ignored"><item quantity="one">x</item></plurals>
            </resources>
        """)

        strings = parse_strings_xml(path)

        self.assertEqual(strings, {"app_name": "My App", "greeting": "Hello"})
        self.assertEqual(list(strings), ["app_name", "greeting"])

    def test_parse_strings_xml_handles_special_characters(self):
        path = self._write("values/strings.xml", """
            <?xml version="1.0" encoding="utf-8"?>
            <resources>
                <string name="amp">Tom &amp; Jerry</string>
                <string name="lt">a &lt; b</string>
                <string name="umlaut">Grüße</string>
            </resources>
        """)

        strings = parse_strings_xml(path)

        self.assertEqual(strings["amp"], "Tom & Jerry")
        self.assertEqual(strings["lt"], "a < b")
        self.assertEqual(strings["umlaut"], "Grüße")

    def test_parse_strings_xml_raises_on_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            parse_strings_xml(os.path.join(self.root, "missing.xml"))

    def test_read_string_key_order_preserves_document_order(self):
        path = self._write("values/strings.xml", """
            <resources>
                <string name="zeta">z</string>
                <string name="alpha">a</string>
                <string name="mid">m</string>
            </resources>
        """)

        self.assertEqual(read_string_key_order(path), ["zeta", "alpha", "mid"])

    def test_read_string_key_order_of_missing_file_is_empty(self):
        self.assertEqual(read_string_key_order(os.path.join(self.root, "nope.xml")), [])

    def test_merge_key_order_preserves_existing_order_and_appends_new_keys(self):
        self.assertEqual(merge_key_order(["a", "b", "c"], ["c", "d", "a"]), ["a", "c", "d"])

    def test_merge_key_order_returns_desired_order_when_existing_is_empty(self):
        self.assertEqual(merge_key_order([], ["b", "a"]), ["b", "a"])

    def test_write_strings_xml_creates_formatted_file(self):
        path = write_strings_xml(self.root, "es", {"hello": "Hola"})

        self.assertEqual(path, os.path.join(self.root, "values-es", "strings.xml"))
        with open(path, encoding='utf-8') as f:
            content = f.read()
        self.assertTrue(content.startswith("<?xml"))
        self.assertIn('    <string name="hello">Hola</string>', content)
        self.assertEqual(parse_strings_xml(path), {"hello": "Hola"})

    def test_write_strings_xml_preserves_key_order_when_provided(self):
        path = write_strings_xml(self.root, "de", {"a": "1", "b": "2", "c": "3"}, ["c", "a", "b"])

        self.assertEqual(read_string_key_order(path), ["c", "a", "b"])

    def test_write_strings_xml_appends_unlisted_keys_sorted(self):
        path = write_strings_xml(self.root, "de", {"x": "1", "b": "2", "a": "3"}, ["x"])

        self.assertEqual(read_string_key_order(path), ["x", "a", "b"])

    def test_write_strings_xml_sorts_alphabetically_without_order(self):
        path = write_strings_xml(self.root, "fr", {"zebra": "z", "apple": "a", "mango": "m"})

        self.assertEqual(read_string_key_order(path), ["apple", "mango", "zebra"])

    def test_write_strings_xml_round_trips_markup_characters(self):
        path = write_strings_xml(self.root, "fr", {"amp": "Tom & Jerry <3"})

        self.assertEqual(parse_strings_xml(path), {"amp": "Tom & Jerry <3"})

    def test_detect_target_languages_finds_language_directories(self):
        for name in ("values", "values-es", "values-fr", "drawable"):
            os.makedirs(os.path.join(self.root, name))

        self.assertEqual(detect_target_languages(self.root), ["es", "fr"])

    def test_detect_target_languages_of_missing_directory_is_empty(self):
        self.assertEqual(detect_target_languages(os.path.join(self.root, "missing")), [])

    def test_language_output_path(self):
        self.assertEqual(
            language_output_path("res", "pt-rBR"),
            os.path.join("res", "values-pt-rBR", "strings.xml")
        )


if __name__ == '__main__':
    unittest.main()
