from importlib import import_module

modules = [
    'sync',
    'conflicts',
    'records',
    'audit',
]

for m in modules:
    import_module(f'.{m}', __name__)

__all__ = modules
