"""
Bounded-context modules.

`mfa` owns two-factor enrollment; `guardian` owns in-session safety
monitoring. Routers and workers call the application services here rather
than repositories directly.
"""
