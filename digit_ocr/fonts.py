"""
fonts.py
~~~~~~~~

Locate installed fonts suitable for rendering training digits.

Symbol, icon and heavily decorative families are skipped: their "digits"
are pictures that look nothing like a numeral.
"""

import logging
import os
import sys
from dataclasses import dataclass
from typing import Iterable, List, Optional

from PIL import ImageFont

# Configure module logger
logger = logging.getLogger(__name__)

FONT_EXTENSIONS = ('.ttf', '.otf', '.ttc')

EXCLUDED_FAMILIES = (
    'Symbol',
    'Blackadder ITC',
    'MDL2 Assets',
    'Palace Script MT',
    'Icons',
    'MT Extra',
    'MS Outlook',
    'Marlett',
    'Parchment',
    'MS Reference Specialty',
    'dings',
    'Rage Italic',
    'Playbill',
    'Snap ITC',
    'Kunstler Script',
    'Emoji',
)


@dataclass(frozen=True)
class FontEntry:
    """A font family name and the file that provides it."""
    name: str
    path: str


def default_font_dirs() -> List[str]:
    """Platform font directories."""
    if sys.platform.startswith('win'):
        windir = os.environ.get('WINDIR', 'C:\\Windows')
        return [os.path.join(windir, 'Fonts')]
    if sys.platform == 'darwin':
        return [
            '/System/Library/Fonts',
            '/Library/Fonts',
            os.path.expanduser('~/Library/Fonts'),
        ]
    return [
        '/usr/share/fonts',
        '/usr/local/share/fonts',
        os.path.expanduser('~/.fonts'),
        os.path.expanduser('~/.local/share/fonts'),
    ]


def is_excluded(name: str) -> bool:
    return any(fragment in name for fragment in EXCLUDED_FAMILIES)


def _font_files(directories: Iterable[str]) -> List[str]:
    paths = []
    for directory in directories:
        if not os.path.isdir(directory):
            continue
        for root, _dirs, files in os.walk(directory):
            for filename in files:
                if filename.lower().endswith(FONT_EXTENSIONS):
                    paths.append(os.path.join(root, filename))
    return sorted(paths)


def discover_fonts(
    directories: Optional[Iterable[str]] = None,
    limit: Optional[int] = None
) -> List[FontEntry]:
    """
    Find one font file per family, sorted by family name.

    Args:
        directories: Where to look (defaults to the platform font folders)
        limit: Keep at most this many families

    Returns:
        List of FontEntry
    """
    if directories is None:
        directories = default_font_dirs()

    families = {}
    for path in _font_files(directories):
        try:
            family = ImageFont.truetype(path, 10).getname()[0]
        except OSError as e:
            logger.warning(f"Skipping unreadable font {path}: {e}")
            continue

        if not family or is_excluded(family):
            logger.debug(f"Excluding font family '{family}' ({path})")
            continue
        families.setdefault(family, path)

    fonts = [FontEntry(name, families[name]) for name in sorted(families)]
    if limit is not None:
        fonts = fonts[:limit]

    logger.info(f"Discovered {len(fonts)} font families")
    return fonts
