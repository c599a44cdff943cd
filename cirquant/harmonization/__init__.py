"""Code normalisation, mapping, unit conversion, merge and indicators."""
