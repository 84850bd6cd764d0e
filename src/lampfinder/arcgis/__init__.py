"""ArcGIS feature layer access."""

from .transport import FeatureLayerClient, any_like_clause, like_clause, quote_literal

__all__ = ["FeatureLayerClient", "any_like_clause", "like_clause", "quote_literal"]
