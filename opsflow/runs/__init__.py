"""Run records and their stores."""
