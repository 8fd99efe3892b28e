"""Encoding, concatenation, chunk pipeline and file discovery."""
