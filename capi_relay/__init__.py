"""Storefront conversion-event ingestion and Meta CAPI delivery service."""
