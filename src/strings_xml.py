"""Android strings.xml reading, writing and key-order merging."""
import os
from typing import Dict, List, Optional

from lxml import etree

OUTPUT_DIR_PREFIX = "values"
STRINGS_FILE_NAME = "strings.xml"


def language_output_path(output_dir: str, language: str) -> str:
    """Return the path of the strings.xml file for ``language`` under ``output_dir``."""
    return os.path.join(output_dir, f"{OUTPUT_DIR_PREFIX}-{language}", STRINGS_FILE_NAME)


def _string_elements(file_path: str):
    tree = etree.parse(file_path)
    root = tree.getroot()
    return root.findall("string")


def parse_strings_xml(file_path: str) -> Dict[str, str]:
    """
    Parse an Android strings.xml file.

    Args:
        file_path (str): The path to the strings.xml file.

    Returns:
        Dict[str, str]: Key-value pairs in document order.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"Strings file not found: {os.path.abspath(file_path)}")

    strings: Dict[str, str] = {}
    for element in _string_elements(file_path):
        name = element.get("name")
        if name is None:
            continue
        # Inline markup (e.g. <b>) is flattened to its text content.
        strings[name] = "".join(element.itertext())
    return strings


def read_string_key_order(file_path: str) -> List[str]:
    """Read string keys in document order. A missing file has no keys."""
    if not os.path.exists(file_path):
        return []

    keys = []
    for element in _string_elements(file_path):
        name = element.get("name")
        if name is not None:
            keys.append(name)
    return keys


def merge_key_order(existing_order: List[str], desired_order: List[str]) -> List[str]:
    """
    Merge an existing key order with a desired one.

    Keys present in both keep their existing relative order, keys only in the
    desired order are appended in desired order, and keys no longer desired
    are dropped.

    Example:
        >>> merge_key_order(["a", "b", "c"], ["c", "d", "a"])
        ['a', 'c', 'd']
    """
    if not existing_order:
        return list(desired_order)

    existing_set = set(existing_order)
    desired_set = set(desired_order)

    merged = [key for key in existing_order if key in desired_set]
    merged.extend(key for key in desired_order if key not in existing_set)
    return merged


def write_strings_xml(
        output_dir: str,
        language: str,
        translations: Dict[str, str],
        ordered_keys: Optional[List[str]] = None
) -> str:
    """
    Write translations to ``<output_dir>/values-<language>/strings.xml``.

    Args:
        output_dir (str): The resource root directory.
        language (str): The language code used for the directory suffix.
        translations (Dict[str, str]): The key-value pairs to write.
        ordered_keys (Optional[List[str]]): Key order to use. Keys missing from
            it are appended in sorted order. Without it, all keys are sorted.

    Returns:
        str: The path of the written file.
    """
    output_path = language_output_path(output_dir, language)
    os.makedirs(os.path.dirname(output_path), exist_ok=True)

    if ordered_keys is not None:
        ordered = [key for key in ordered_keys if key in translations]
        listed = set(ordered)
        ordered.extend(sorted(key for key in translations if key not in listed))
    else:
        ordered = sorted(translations)

    root = etree.Element("resources")
    for key in ordered:
        element = etree.SubElement(root, "string", name=key)
        element.text = translations[key]

    etree.indent(root, space="    ")
    tree = etree.ElementTree(root)
    tree.write(output_path, encoding="utf-8", xml_declaration=True, pretty_print=True)
    return output_path


def detect_target_languages(output_dir: str) -> List[str]:
    """Detect language codes from existing ``values-<lang>`` directories."""
    if not os.path.isdir(output_dir):
        return []

    prefix = f"{OUTPUT_DIR_PREFIX}-"
    languages = []
    for name in os.listdir(output_dir):
        if name.startswith(prefix) and os.path.isdir(os.path.join(output_dir, name)):
            language = name[len(prefix):]
            if language:
                languages.append(language)
    return sorted(languages)
