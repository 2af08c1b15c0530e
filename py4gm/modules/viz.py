# -*- coding: utf-8 -*-
'''
Plots for joint inversion runs: cost convergence, LSQR residual histories
and observed vs calculated data.
'''

import numpy as np

import matplotlib.pyplot as plt

from .errors import DataIOError


def read_costs(file_name):
    '''
    Read a ``costs.txt`` file.

    Returns
    -------
    names : list of str
        Column names (``cost_<physics>`` ..., ``joint``).
    table : numpy.ndarray
        One row per major iteration, first column the iteration number.
    '''
    try:
        with open(file_name, 'r') as f:
            header = f.readline()
    except OSError as exc:
        raise DataIOError(f'Error in opening the costs file {file_name}!') from exc

    names = header.lstrip('#').split()[1:]
    try:
        table = np.loadtxt(file_name, comments='#', ndmin=2)
    except ValueError as exc:
        raise DataIOError(f'Problem while reading the costs file {file_name}: {exc}') from exc
    return names, table


def read_residuals(file_name):
    '''
    Read ``lsqr_residuals.txt``: one line of residual norms per solve.
    '''
    try:
        with open(file_name, 'r') as f:
            lines = [ln.split() for ln in f]
    except OSError as exc:
        raise DataIOError(f'Error in opening the residuals file {file_name}!') from exc
    try:
        return [np.array([float(v) for v in ln]) for ln in lines if ln]
    except ValueError as exc:
        raise DataIOError(f'Problem while reading the residuals file {file_name}: {exc}') from exc


def plot_convergence(
        ThisAxis=None,
        PlotFile='',
        PlotTitle='',
        PlotFormat=['.png'],
        FigSize=[12.*0.3937, 9.*0.3937],
        Names=[],
        Costs=None,
        Target=0.,
        Fontsizes=[10, 10, 12]):
    '''
    Plot normalised data costs against the major iteration.

    Parameters
    ----------
    ThisAxis : matplotlib axis, optional
        Plot into this axis; a new figure is created (and saved) otherwise.
    Names : list of str
        Column names as returned by :func:`read_costs`.
    Costs : numpy.ndarray
        Table as returned by :func:`read_costs`.
    Target : float
        Target misfit; drawn as a horizontal line when positive.

    Returns
    -------
    ax
    '''
    if Costs is None or np.size(Costs) == 0:
        raise ValueError('plot_convergence: no costs given!')

    if ThisAxis is None:
        fig, ax = plt.subplots(1, 1, figsize=FigSize)
        fig.suptitle(PlotTitle, fontsize=Fontsizes[2])
    else:
        ax = ThisAxis

    itern = Costs[:, 0]
    for icol, name in enumerate(Names, start=1):
        ax.semilogy(itern, np.maximum(Costs[:, icol], 1.e-30),
                    marker='o', linestyle='dashed' if name == 'joint' else 'solid',
                    linewidth=1, markersize=5, label=name.replace('cost_', ''))

    if Target > 0.:
        ax.axhline(Target, color='grey', linestyle='dotted', label='target')

    ax.set_xlabel('major iteration', fontsize=Fontsizes[1])
    ax.set_ylabel(r'$\Vert d - d_{calc}\Vert^2 / \Vert d\Vert^2$', fontsize=Fontsizes[1])
    ax.grid(True)
    ax.legend(fontsize=Fontsizes[0])

    if ThisAxis is None:
        fig.tight_layout()
        for F in PlotFormat:
            fig.savefig(PlotFile + F)
        plt.close(fig)

    return ax


def plot_residual_history(
        ThisAxis=None,
        PlotFile='',
        PlotTitle='LSQR residuals',
        PlotFormat=['.png'],
        FigSize=[12.*0.3937, 9.*0.3937],
        Histories=[],
        Fontsizes=[10, 10, 12]):
    '''
    Plot the residual-norm history of every solve, one curve per major iteration.
    '''
    if ThisAxis is None:
        fig, ax = plt.subplots(1, 1, figsize=FigSize)
        fig.suptitle(PlotTitle, fontsize=Fontsizes[2])
    else:
        ax = ThisAxis

    for isol, hist in enumerate(Histories, start=1):
        hist = np.asarray(hist, dtype=float)
        ax.semilogy(np.arange(hist.size), np.maximum(hist, 1.e-300),
                    linewidth=1, label=f'solve {isol}')

    ax.set_xlabel('minor iteration', fontsize=Fontsizes[1])
    ax.set_ylabel(r'$\Vert r\Vert$', fontsize=Fontsizes[1])
    ax.grid(True)
    if 0 < len(Histories) <= 10:
        ax.legend(fontsize=Fontsizes[0])

    if ThisAxis is None:
        fig.tight_layout()
        for F in PlotFormat:
            fig.savefig(PlotFile + F)
        plt.close(fig)

    return ax


def plot_data_fit(
        ThisAxis=None,
        PlotFile='',
        PlotTitle='',
        PlotFormat=['.png'],
        FigSize=[12.*0.3937, 9.*0.3937],
        Data=None,
        Unit='',
        Fontsizes=[10, 10, 12]):
    '''
    Observed against calculated values of a :class:`data.DataSet`.
    '''
    if Data is None:
        raise ValueError('plot_data_fit: no data given!')

    if ThisAxis is None:
        fig, ax = plt.subplots(1, 1, figsize=FigSize)
        fig.suptitle(PlotTitle, fontsize=Fontsizes[2])
    else:
        ax = ThisAxis

    idx = np.arange(Data.ndata)
    ax.plot(idx, Data.val_meas, 'o', markersize=4, markerfacecolor='white', label='observed')
    ax.plot(idx, Data.val_calc, '-', linewidth=1, color='red', label='calculated')
    ax.set_xlabel('datum #', fontsize=Fontsizes[1])
    ax.set_ylabel(f'{Data.name} [{Unit}]' if Unit else Data.name, fontsize=Fontsizes[1])
    ax.grid(True)
    ax.legend(fontsize=Fontsizes[0])

    if ThisAxis is None:
        fig.tight_layout()
        for F in PlotFormat:
            fig.savefig(PlotFile + F)
        plt.close(fig)

    return ax
