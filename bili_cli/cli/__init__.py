"""
Command-line front end: Typer commands, Rich progress display and formatters.
"""
