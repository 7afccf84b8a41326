"""Naming helpers for relationship inference.

Plain English inflection rules, good enough for table names. Irregular
nouns that show up in schemas get an explicit entry.
"""

from __future__ import annotations

_IRREGULAR_PLURALS = {
    "person": "people",
    "child": "children",
    "man": "men",
    "woman": "women",
    "mouse": "mice",
    "datum": "data",
    "index": "indices",
    "status": "statuses",
    "analysis": "analyses",
}
_IRREGULAR_SINGULARS = {plural: singular for singular, plural in _IRREGULAR_PLURALS.items()}
_UNCOUNTABLE = {"data", "metadata", "information", "equipment", "news", "series", "species"}
_VOWELS = "aeiou"


def _split_last_word(name: str) -> tuple[str, str]:
    """Split ``blog_post`` into ``("blog_", "post")`` so only the last word inflects."""
    idx = name.rfind("_")
    if idx == -1:
        return "", name
    return name[: idx + 1], name[idx + 1 :]


def _match_case(template: str, word: str) -> str:
    if template.isupper():
        return word.upper()
    if template[:1].isupper():
        return word[:1].upper() + word[1:]
    return word


def pluralize(name: str) -> str:
    """Return the plural form of a (snake_case) table or column name.

    Names that already look plural are returned unchanged.
    """
    if not name:
        return name
    prefix, word = _split_last_word(name)
    lower = word.lower()

    if lower in _UNCOUNTABLE or lower in _IRREGULAR_SINGULARS:
        return name
    if lower in _IRREGULAR_PLURALS:
        return prefix + _match_case(word, _IRREGULAR_PLURALS[lower])
    if lower.endswith("ss"):
        return name + "es"
    if lower.endswith(("ses", "xes", "zes", "ches", "shes", "ies", "s")):
        return name
    if lower.endswith("y") and len(lower) > 1 and lower[-2] not in _VOWELS:
        return name[:-1] + "ies"
    if lower.endswith(("x", "z", "ch", "sh")):
        return name + "es"
    return name + "s"


def singularize(name: str) -> str:
    """Return the singular form of a (snake_case) table name."""
    if not name:
        return name
    prefix, word = _split_last_word(name)
    lower = word.lower()

    if lower in _UNCOUNTABLE:
        return name
    if lower in _IRREGULAR_SINGULARS:
        return prefix + _match_case(word, _IRREGULAR_SINGULARS[lower])
    if lower in _IRREGULAR_PLURALS:
        return name
    if lower.endswith("ies") and len(lower) > 3:
        return name[:-3] + "y"
    if lower.endswith(("sses", "xes", "zes", "ches", "shes")):
        return name[:-2]
    if lower.endswith("ss") or lower.endswith("us") or lower.endswith("is"):
        return name
    if lower.endswith("s") and len(lower) > 1:
        return name[:-1]
    return name


def strip_key_suffix(column: str) -> str:
    """``author_id`` -> ``author``, ``authorId`` -> ``author``, ``author`` unchanged."""
    for suffix in ("_id", "_ID", "Id", "ID"):
        if column.endswith(suffix) and len(column) > len(suffix):
            return column[: -len(suffix)]
    return column
