"""Stateless rendering helpers: Markdown articles, CSS import flattening, document assembly."""
