"""
Message Queue — Decouples review submission from review persistence.

- The API PUBLISHES one review message per accepted like/dislike
- ReviewConsumer CONSUMES messages and writes them to the album store
- Supports Redis Streams (production) and in-memory asyncio.Queue (dev)
"""
