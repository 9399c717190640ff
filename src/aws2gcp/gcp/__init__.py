"""GCP destination side (GCS + Compute Engine)."""
