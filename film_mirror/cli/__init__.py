"""
Command-line interface: the Typer application, Rich formatters and the live
progress display.
"""
