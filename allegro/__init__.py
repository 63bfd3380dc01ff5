"""Allegro: a catalog service for classical-music metadata."""
