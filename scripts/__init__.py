"""Command line entry points for NomadNote."""
