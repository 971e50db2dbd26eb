"""CLI command modules for Rollwright."""
