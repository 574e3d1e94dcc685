"""Reconcile fresh translations with existing output files and write them back."""
import logging
from typing import Dict, Iterable, List, Optional

from src.logging_config import LOGGER_NAME
from src.strings_xml import (
    language_output_path,
    merge_key_order,
    parse_strings_xml,
    read_string_key_order,
    write_strings_xml,
)

logger = logging.getLogger(LOGGER_NAME)


def translations_for_language(translations: Dict[str, Dict[str, str]], language: str) -> Dict[str, str]:
    """Restrict a key -> language -> text mapping to one language."""
    return {
        key: by_language[language]
        for key, by_language in translations.items()
        if language in by_language
    }


def languages_in(translations: Dict[str, Dict[str, str]]) -> set:
    return {language for by_language in translations.values() for language in by_language}


def reconcile_language(
        prior_output: Dict[str, str],
        fresh: Dict[str, str],
        source_keys: List[str],
        removed_keys: Iterable[str] = (),
        existing_order: Optional[List[str]] = None
) -> Dict[str, str]:
    """
    Build the content of one language's output file.

    Fresh translations override prior output, keys that are no longer in the
    source are dropped, and the result is ordered by merging the existing
    on-disk order with the source order.

    Args:
        prior_output (Dict[str, str]): Content of the current output file.
        fresh (Dict[str, str]): Translations received in this run.
        source_keys (List[str]): Current source keys in source order.
        removed_keys (Iterable[str]): Keys removed since the last run.
        existing_order (Optional[List[str]]): Key order of the existing file.

    Returns:
        Dict[str, str]: The merged content in output order.
    """
    merged = dict(prior_output)
    merged.update(fresh)

    removed = set(removed_keys)
    wanted = [key for key in source_keys if key not in removed]
    order = merge_key_order(existing_order or [], wanted)

    return {key: merged[key] for key in order if key in merged}


def write_language_outputs(
        output_dir: str,
        translations: Dict[str, Dict[str, str]],
        languages: Iterable[str],
        source_keys: List[str],
        removed_keys: Iterable[str] = ()
) -> Dict[str, str]:
    """
    Reconcile and write the output file of every language.

    Each file is rewritten in full. A language whose output file does not
    exist yet starts from empty prior content and takes the source order.

    Returns:
        Dict[str, str]: Written file path per language.
    """
    removed = list(removed_keys)
    written = {}
    for language in sorted(languages):
        output_path = language_output_path(output_dir, language)
        try:
            prior_output = parse_strings_xml(output_path)
        except FileNotFoundError:
            prior_output = {}
        existing_order = read_string_key_order(output_path)

        content = reconcile_language(
            prior_output,
            translations_for_language(translations, language),
            source_keys,
            removed,
            existing_order,
        )
        order = list(content) if source_keys or existing_order else None
        written[language] = write_strings_xml(output_dir, language, content, order)
        logger.debug("Wrote %d string(s) for '%s' to '%s'.", len(content), language, written[language])
    return written
