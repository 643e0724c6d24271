"""DynamoDB access for the single application table.

- the boto3 table wrapper with conditional writes
- retry/backoff for throttling and transient failures
- typed storage errors that render as problem details
"""
