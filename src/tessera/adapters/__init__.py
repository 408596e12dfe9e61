"""Adapters - protocol codecs and storage behind the core interfaces."""
