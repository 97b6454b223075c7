"""
Services Package.

Long-lived services shared by the repositories and the application layer:
the offline cache, the identity resolver, the session lifecycle controller
and the auth service.  They are wired together in :mod:`ondeck.container`.
"""
