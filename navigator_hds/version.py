"""Navigator HDS Meta information.
   Navigator HDS keeps session-scoped and sensitive practice data local,
   compartmentalized and encrypted.
"""
__title__ = 'navigator_hds'
__description__ = (
   'Navigator HDS keeps session-scoped and sensitive practice data '
   'local, compartmentalized and encrypted.'
)
__version__ = '0.1.0'
__copyright__ = 'Copyright (c) 2023 Jesus Lara'
__author__ = 'Jesus Lara'
__author_email__ = 'jesuslarag@gmail.com'
__license__ = 'Apache-2.0'
__url__ = 'https://github.com/phenobarbital/navigator-hds'
