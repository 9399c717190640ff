"""aws2gcp - migrate an AWS EC2 instance to Google Compute Engine."""

__version__ = "0.1.0"
