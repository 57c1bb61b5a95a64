"""Pure helpers: fingerprints and trigram similarity."""
