# -*- coding: utf-8 -*-
'''
Version string for Py4GMX drivers.
'''

from datetime import datetime


def versionstrg():
    '''
    Set version string and date.
    '''
    now = datetime.now()
    version = '- Py4GMX 0.9.0 -'
    release_date = now.strftime('%m/%d/%Y, %H:%M:%S')

    return version, release_date
