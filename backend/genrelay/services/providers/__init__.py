"""Provider adapter implementations.

Each module adapts one upstream API family to the common adapter contract:
  validate request → call upstream (stream, sync or task + poll) → GenerationResult
"""
