"""Text helpers."""

from __future__ import annotations

import re
import unicodedata

_UNSAFE = re.compile(r"[^A-Za-z0-9]+")


def slugify(name: str, default: str = "project") -> str:
    """Turn a project name into a stable, filesystem-safe file stem.

    Accents are folded to ASCII and every other run of characters outside
    ``[A-Za-z0-9]`` becomes a single underscore.

    Example:
        >>> slugify("Forêt de Fontainebleau (nord)")
        'Foret_de_Fontainebleau_nord'
    """
    folded = (
        unicodedata.normalize("NFKD", name)
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    slug = _UNSAFE.sub("_", folded).strip("_")
    return slug or default
