"""lampfinder: street-lamp lookup and incident dispatch for municipal lighting.

This package resolves free-text street names into street-lamp records held in a
remote ArcGIS feature layer, and turns citizen incident descriptions into a
short list of confidence-scored lamp candidates for the maintenance crew.
"""
