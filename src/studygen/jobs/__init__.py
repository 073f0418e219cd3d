"""Study request queue: durable requests, retrying worker, event dispatch.

Requests are rows in SQLite and work is delivered as `work_events` rows. A
claim is a conditional update, every terminal status write is a
compare-and-swap on the active statuses, and a request can own at most one
material (unique `request_id`). Redelivering an event is therefore always
safe: a second invocation either resumes an unfinished request or skips a
finished one.
"""
