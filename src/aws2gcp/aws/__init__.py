"""AWS source side (EC2 + S3)."""
