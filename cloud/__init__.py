"""Reference remote store for NomadNote."""
