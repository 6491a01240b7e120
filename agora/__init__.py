"""
Agora — Real-Time Engagement & Notification Sync
=================================================
The engagement core of a community content platform: reaction toggles with
counter caches, @-mention fan-out, the notification lifecycle, push-event
broadcasting, and the client-side store that reconciles optimistic edits
with pushed events.

Package layout::

    agora/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Limits, preview budget, private field names
    ├── errors.py          # AgoraError hierarchy
    ├── database/
    │   ├── engine.py      # Engine factory, init_db, run_db
    │   └── models.py      # Users, posts, comments, reactions, notifications
    ├── engine/
    │   ├── targets.py     # TargetRef tagged union over {Post, Comment}
    │   ├── mentions.py    # @-mention extraction (pure)
    │   └── events.py      # BroadcastEvent envelope + channel naming
    ├── services/
    │   ├── reaction_service.py     # Reaction toggle state machine
    │   ├── mention_service.py      # Mention resolution + fan-out
    │   ├── notification_service.py # Notification lifecycle + payloads
    │   ├── content_service.py      # Post/comment writes + counter caches
    │   ├── broadcaster.py          # In-process pub/sub dispatcher
    │   └── pg_notify.py            # PG LISTEN/NOTIFY bridge
    ├── client/
    │   ├── events.py      # Typed client event variants + EventBus
    │   └── store.py       # ReconciliationStore
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Engine/dispatcher/JWT dependencies
        └── gateway.py     # WebSocket push gateway
"""

__version__ = "0.1.0"
