"""Typer sub-applications of the unideploy command."""
