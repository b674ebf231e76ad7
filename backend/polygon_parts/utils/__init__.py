"""Helpers around the shapely geometry kernel."""
