"""Plejd mesh wire protocol: frame codec and link cipher."""
