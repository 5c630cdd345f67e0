"""Configuration for the certificate manager."""
