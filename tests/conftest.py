import os

# must be set before salvo.services.room creates its module-level store
os.environ.setdefault("SALVO_AUDIT", "0")
os.environ.setdefault("SALVO_STORE", "memory")
