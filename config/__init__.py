"""
Configuration for timeline analysis runs.
"""

from .analysis_config import AnalysisConfig, load_pattern_file

__all__ = ['AnalysisConfig', 'load_pattern_file']
