"""upscrolled_shared — Shared utilities for upscrolled-lite Lambda functions.

Provides:
    - Identity resolution (API Gateway JWT authorizer claims / Cognito JWT)
    - Lazy-singleton AWS clients (S3, DynamoDB, EventBridge, Secrets Manager)
    - HTTP response helpers with CORS and the error envelope
    - Error taxonomy shared by every API Lambda
    - Fixed-window request rate gate
    - DynamoDB serialization/deserialization
"""

__version__ = "1.0.0"
