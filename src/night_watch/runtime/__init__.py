"""Filesystem coordination primitives shared by independent worker processes."""
