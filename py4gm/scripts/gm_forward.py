#!/usr/bin/env python3
# -*- coding: utf-8 -*-
'''
Forward data of the starting models, evaluated row chunk by row chunk
without storing the sensitivity matrix.

    gm_forward.py -p Parfile [--backend serial|mpi] [--plot]

Writes ``<physics>_calc_data.txt`` and ``<physics>_calc_data_csv.txt`` to
the output folder of the Parfile.
'''

import argparse
import inspect
import sys

from py4gm.modules import util as utl
from py4gm.modules import viz
from py4gm.modules.config import InversionConfig
from py4gm.modules.errors import exit_code_of
from py4gm.modules.joint import JointInversion
from py4gm.modules.parallel import get_comm, root_call
from py4gm.modules.version import versionstrg


def main(argv=None):
    parser = argparse.ArgumentParser(description='Forward gravity/magnetic data.')
    parser.add_argument('-p', '--parfile', required=True, help='Parfile (key = value)')
    parser.add_argument('--backend', default='serial', choices=['serial', 'mpi'])
    parser.add_argument('--plot', action='store_true', help='plot observed vs calculated')
    args = parser.parse_args(argv)

    comm = get_comm(args.backend)
    version, _ = versionstrg()
    fname = inspect.getfile(inspect.currentframe())
    if comm.rank == 0:
        utl.print_title(version=version, fname=fname, out=True)

    try:
        cfg = root_call(comm, InversionConfig.from_parfile, args.parfile, comm.rank == 0)
        inv = JointInversion(cfg, comm=comm, out=True)
        inv.forward_only()
    except Exception as exc:
        print(f'gm_forward (rank {comm.rank}): {type(exc).__name__}: {exc}', file=sys.stderr)
        comm.abort(exit_code_of(exc))
        return exit_code_of(exc)

    if args.plot and inv.ctx.is_root:
        for p, d in inv.data.items():
            viz.plot_data_fit(PlotFile=inv.ctx.path(f'{p}_calc_data'),
                              PlotTitle=f'{p} forward data', Data=d,
                              Unit=inv.kernels[p].unit)
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
