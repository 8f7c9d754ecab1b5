"""Storefront backend: catalog, cart, manual-payment checkout and admin back office."""

__version__ = "1.0.0"
