"""Journal Vault Meta information.
   Journal Vault keeps per-user master keys and encrypts journal fields at rest.
"""
__title__ = 'journal_vault'
__description__ = (
   'Journal Vault keeps per-user master keys and encrypts '
   'selected journal fields at rest.'
)
__version__ = '0.3.0'
__copyright__ = 'Copyright (c) 2024 Journal Vault contributors'
__author__ = 'Journal Vault contributors'
__author_email__ = 'maintainers@journal-vault.dev'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/journal-vault/journal-vault'
