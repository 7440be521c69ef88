"""Static data catalogs (command templates, package aliases)."""
