"""docintake_shared — Shared utilities for document intake Lambda functions.

Provides:
    - Cognito JWT authentication (cookie-based)
    - DynamoDB / S3 client singletons
    - HTTP response helpers with CORS and the error envelope
    - DynamoDB serialization/deserialization
    - Metadata-tagged filename codec (m(k=v)(k=v)...)
    - Filename / tag-value sanitization and transliteration
    - Intake error taxonomy
"""

__version__ = "1.0.0"
