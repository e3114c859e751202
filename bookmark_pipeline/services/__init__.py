"""Services: page fetching, extraction, storage, search and link probing."""
