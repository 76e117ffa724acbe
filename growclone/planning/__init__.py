"""Size estimation, role classification and layout planning.

Everything in this package is pure with respect to the destination device:
it reads source information through the storage adapters and produces
immutable values, never mutating a disk.
"""
