version = 'InheritVault 0.3.0'
version_short = version.split()[-1]


def _lazy_import(name):
    """Lazy import to avoid pulling in aiohttp at module load time."""
    import importlib
    if name == 'ChainQueryClient':
        mod = importlib.import_module('inheritvault.server.chain_client')
        return mod.ChainQueryClient
    if name == 'VaultResolver':
        mod = importlib.import_module('inheritvault.server.vault_resolver')
        return mod.VaultResolver
    if name == 'Env':
        mod = importlib.import_module('inheritvault.server.env')
        return mod.Env
    raise AttributeError(f'module {__name__!r} has no attribute {name!r}')


def __getattr__(name):
    return _lazy_import(name)
