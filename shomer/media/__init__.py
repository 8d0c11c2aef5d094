"""
shomer/media — Media Analysis Subsystem (image, audio, video).
"""

from shomer.media.analyzer import (
    ChatMediaOutcome,
    MediaAnalysisResult,
    MediaAnalyzer,
    MediaFlag,
    analyze_chat_media,
    deduplicate_findings,
)

__all__ = [
    "ChatMediaOutcome",
    "MediaAnalysisResult",
    "MediaAnalyzer",
    "MediaFlag",
    "analyze_chat_media",
    "deduplicate_findings",
]
