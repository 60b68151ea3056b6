"""
Figaro — mirrors a Slack workspace into PostgreSQL and pushes a live
ok/bad classification of its channels to connected browsers.

Slack is only ever read: Web API calls go through ReadOnlySlackClient.
Channel classification is derived from stored state on every update and
is never written back to storage.
"""
