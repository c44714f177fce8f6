"""mesh/ -- Client and orchestration for the external mesh-control service.

Layer rule: mesh/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or auth/.
"""
