"""Bookmark Pipeline - asynchronous content processing for saved bookmarks.

Archives pages, indexes their text for search, and keeps duplicate and
broken-link flags current.
"""

__version__ = "0.1.0"
