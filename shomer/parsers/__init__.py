"""
shomer/parsers — normalized message feed loader.
"""

from shomer.parsers.feed_parser import (
    FeedEntry,
    load_accounts,
    load_feed,
    parse_accounts_file,
    parse_feed_directory,
    parse_feed_file,
)

__all__ = [
    "FeedEntry",
    "load_accounts",
    "load_feed",
    "parse_accounts_file",
    "parse_feed_directory",
    "parse_feed_file",
]
