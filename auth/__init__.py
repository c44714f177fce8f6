"""auth/ -- Identity, session, credential and device-flow package for realmgate.

Layer rule: auth/ imports stdlib, third-party libraries, core/ and mesh/
(login orchestration and device approval only).
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
