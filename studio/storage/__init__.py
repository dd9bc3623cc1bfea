"""Local persistence package.

Scope:
    Holds the on-device key-value store used for the Replicate API key. Nothing
    stored here is ever sent anywhere except as the bearer token of API calls.
"""
