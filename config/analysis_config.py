"""
Analysis Configuration Manager for ShimCache timelines
Handles loading and saving correlation preferences and pattern lists.
"""

import copy
import json
import logging
import os
from typing import List

logger = logging.getLogger(__name__)


def load_pattern_file(path) -> List[str]:
    """
    Read one regular expression per line.

    Blank lines and lines starting with ``#`` are ignored; the remaining
    lines are kept verbatim apart from the trailing newline.

    Args:
        path: Pattern file path

    Returns:
        list: Patterns in file order
    """
    patterns = []
    with open(path, 'r', encoding='utf-8') as f:
        for line in f:
            line = line.rstrip('\r\n')
            if not line.strip() or line.lstrip().startswith('#'):
                continue
            patterns.append(line)
    logger.debug(f"Loaded {len(patterns)} patterns from {path}")
    return patterns


class AnalysisConfig:
    """
    Manages timeline analysis preferences.
    Preferences live in the ``analysis`` section of a JSON configuration file.
    """

    DEFAULT_CONFIG = {
        'patterns': [],
        'pattern_files': [],
        'near_pair_matching': False,
        'near_pair_window_seconds': 60,
        'show_progress': False,
        'log_level': 'INFO',
        'delimiter': ';',
    }

    def __init__(self, config_file=None):
        """
        Initialize analysis configuration manager.

        Args:
            config_file: Path to configuration file (optional)
        """
        self.config_file = config_file
        # Deep copy so list defaults are never shared
        self.config = copy.deepcopy(self.DEFAULT_CONFIG)

        if config_file and os.path.exists(config_file):
            self.load()

    def load(self) -> bool:
        """
        Load analysis preferences from the configuration file.

        Returns:
            bool: False when the file exists but cannot be read or parsed
        """
        if not self.config_file or not os.path.exists(self.config_file):
            return True

        if os.path.getsize(self.config_file) == 0:
            return True

        try:
            with open(self.config_file, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading configuration {self.config_file}: {e}")
            return False

        analysis_data = data.get('analysis', {}) if isinstance(data, dict) else {}
        for key in self.DEFAULT_CONFIG:
            if key in analysis_data:
                self.config[key] = analysis_data[key]
        return True

    def save(self):
        """Save analysis preferences to the configuration file."""
        if not self.config_file:
            return

        existing_data = {}
        if os.path.exists(self.config_file) and os.path.getsize(self.config_file) > 0:
            try:
                with open(self.config_file, 'r') as f:
                    existing_data = json.load(f)
            except json.JSONDecodeError:
                # File exists but is not valid JSON, start fresh
                existing_data = {}

        existing_data['analysis'] = self.config

        config_dir = os.path.dirname(self.config_file)
        if config_dir:
            os.makedirs(config_dir, exist_ok=True)

        with open(self.config_file, 'w') as f:
            json.dump(existing_data, f, indent=2)

    def get(self, key, default=None):
        return self.config.get(key, default)

    def set(self, key, value):
        """
        Set a preference and persist it.

        Args:
            key: Preference name, one of DEFAULT_CONFIG's keys
            value: New value
        """
        if key not in self.DEFAULT_CONFIG:
            raise KeyError(f"Unknown analysis setting: {key}")
        self.config[key] = value
        self.save()

    def all_patterns(self) -> List[str]:
        """Inline patterns followed by those read from the configured pattern files."""
        patterns = list(self.config['patterns'])
        for path in self.config['pattern_files']:
            patterns.extend(load_pattern_file(path))
        return patterns
