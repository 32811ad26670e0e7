"""Legacy comment CSV import into PostgreSQL and OpenSearch."""
