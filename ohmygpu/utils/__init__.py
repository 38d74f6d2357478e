from ohmygpu.utils.rwlock import RWLock

__all__ = ["RWLock"]
