from importlib import import_module

modules = [
    'auth',
    'users',
    'timeline',
    'permissions',
    'sharing',
    'public',
    'organizations',
]

for m in modules:
    import_module(f'.{m}', __name__)

__all__ = modules
