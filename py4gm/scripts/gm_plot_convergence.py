#!/usr/bin/env python3
# -*- coding: utf-8 -*-
'''
Plot the convergence of a joint inversion run and the final data fit.

    gm_plot_convergence.py OUTPUT_FOLDER [--target T] [--format .png .pdf]

Reads ``costs.txt`` and, where present, ``lsqr_residuals.txt`` and the
``<physics>_observed_data.txt`` and ``<physics>_calc_final_data.txt`` files
written by ``gm_inversion.py``.
'''

import argparse
import inspect
import os

import numpy as np

from py4gm.modules import util as utl
from py4gm.modules import viz
from py4gm.modules.config import PHYSICS
from py4gm.modules.data import DataSet
from py4gm.modules.version import versionstrg


def _read_points(file_name):
    with open(file_name, 'r') as f:
        ndata = int(f.readline().split()[0])
    d = DataSet(ndata)
    d.read(file_name, out=False)
    return d


def main(argv=None):
    parser = argparse.ArgumentParser(description='Plot joint inversion convergence.')
    parser.add_argument('folder', help='output folder of the run')
    parser.add_argument('--target', type=float, default=0., help='target misfit')
    parser.add_argument('--format', nargs='+', default=['.png'], help='plot formats')
    args = parser.parse_args(argv)

    version, _ = versionstrg()
    fname = inspect.getfile(inspect.currentframe())
    utl.print_title(version=version, fname=fname, out=True)

    folder = args.folder
    names, costs = viz.read_costs(os.path.join(folder, 'costs.txt'))
    print('costs: ', names, np.shape(costs))
    viz.plot_convergence(PlotFile=os.path.join(folder, 'convergence'),
                         PlotTitle=os.path.basename(os.path.normpath(folder)),
                         PlotFormat=args.format, Names=names, Costs=costs,
                         Target=args.target)

    resfile = os.path.join(folder, 'lsqr_residuals.txt')
    if os.path.isfile(resfile):
        viz.plot_residual_history(PlotFile=os.path.join(folder, 'lsqr_residuals'),
                                  PlotFormat=args.format,
                                  Histories=viz.read_residuals(resfile))

    for p in PHYSICS:
        obs = os.path.join(folder, f'{p}_observed_data.txt')
        calc = os.path.join(folder, f'{p}_calc_final_data.txt')
        if not (os.path.isfile(obs) and os.path.isfile(calc)):
            continue
        d = _read_points(obs)
        d.name = p
        d.val_calc = _read_points(calc).val_meas
        viz.plot_data_fit(PlotFile=os.path.join(folder, f'{p}_data_fit'),
                          PlotTitle=f'{p}: observed vs calculated',
                          PlotFormat=args.format, Data=d)
        print('plotted data fit for ' + p)

    return 0


if __name__ == '__main__':
    raise SystemExit(main())
