"""Encrypted Storage Meta information.
   Encrypted Storage keeps schema-typed records encrypted at rest
   over any string-keyed key-value medium.
"""
__title__ = 'encrypted_storage'
__description__ = (
   'Encrypted Storage keeps schema-typed records encrypted at rest '
   'over any string-keyed key-value medium.'
)
__version__ = '0.1.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/encrypted-storage'
