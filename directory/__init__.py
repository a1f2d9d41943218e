"""directory/ -- Concrete entity caches: organizations, users, inquiries.

Layer rule: directory/ imports from core/, auth/ and cache/. Stores never
import each other; cross-store effects go through the event channel.
"""
