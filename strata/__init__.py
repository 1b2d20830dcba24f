"""strata: layered environment builds in Python."""
