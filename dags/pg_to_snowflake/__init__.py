"""Bulk PostgreSQL → Snowflake table migration engine."""
