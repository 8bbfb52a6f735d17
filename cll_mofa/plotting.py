# -*- coding: utf-8 -*-
"""
Figures for the CLL MOFA+ analysis.

Every function returns the matplotlib Figure. When `outfile` is given the
figure is saved as PNG (and as SVG next to it with `save_svg=True`) and
closed.

Plots:
- Data overview (which samples are observed in which view)
- Variance explained per factor and view, and in total
- Factor correlation
- Factor values coloured by covariates, factor scatter plots
- Weights (all features ranked, top features), data heatmaps and scatters
- Factor-covariate association heatmap, view-factor network
- Enrichment results
- Cox hazard ratios, Kaplan-Meier curves
- Random forest label predictions
"""
import os
import logging

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
import networkx as nx
from matplotlib import gridspec
from matplotlib.colors import Normalize, to_rgba
from matplotlib.patches import Patch

from .config import PLOT_SETTINGS, VIEW_COLORS, MISSING_COLOR, covariate_palette, set_publication_style
from .exceptions import AnalysisError

logger = logging.getLogger(__name__)

set_publication_style()


def _save(fig, outfile, save_svg=False):
    if outfile is None:
        return fig
    out_dir = os.path.dirname(outfile)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    fig.savefig(outfile, dpi=PLOT_SETTINGS["dpi"], bbox_inches='tight')
    if save_svg:
        fig.savefig(os.path.splitext(outfile)[0] + ".svg", format='svg', bbox_inches='tight')
    plt.close(fig)
    logger.info(f"   Saved figure: {outfile}")
    return fig


def _view_color(view, i, n):
    return VIEW_COLORS.get(view, plt.cm.viridis(i / max(1, n - 1)))


def _factor_order(names):
    """Sort 'Factor10' after 'Factor9'."""
    def key(name):
        digits = ''.join(ch for ch in str(name) if ch.isdigit())
        return (int(digits) if digits else 0, str(name))
    return sorted(names, key=key)


def _covariate_labels(metadata, color_by, index):
    """Covariate values for `index` as strings, missing values as 'NA'."""
    values = metadata[color_by].reindex(index)
    numeric = pd.to_numeric(values, errors='coerce')
    if numeric.notna().sum() == values.notna().sum():
        values = numeric.map(lambda v: f"{v:g}" if pd.notna(v) else np.nan)
    return values.astype(object).where(values.notna(), 'NA').astype(str)


def _palette_for(color_by, labels):
    levels = sorted(l for l in set(labels) if l != 'NA')
    numeric_levels = {}
    for lv in levels:
        try:
            numeric_levels[lv] = float(lv)
        except ValueError:
            numeric_levels = None
            break
    # integer codes such as 0/1 pick up the known IGHV and trisomy12 colours
    if numeric_levels and all(v.is_integer() for v in numeric_levels.values()):
        numeric_levels = {lv: int(v) for lv, v in numeric_levels.items()}
        base = covariate_palette(color_by, list(numeric_levels.values()))
        palette = {lv: base[numeric_levels[lv]] for lv in levels}
    else:
        palette = covariate_palette(color_by, levels)
    palette['NA'] = MISSING_COLOR
    return palette


# --- Data overview and variance explained -------------------------------

def plot_data_overview(summary, observed, outfile=None, save_svg=False):
    """Tiles of observed samples per view, annotated with feature counts."""
    views = list(observed.columns)
    n_samples = observed.shape[0]
    image = np.ones((len(views), n_samples, 4))
    for i, view in enumerate(views):
        colour = to_rgba(_view_color(view, i, len(views)))
        image[i, observed[view].values] = colour
        image[i, ~observed[view].values] = to_rgba(MISSING_COLOR)

    fig, ax = plt.subplots(figsize=(12, 0.6 * len(views) + 1.5))
    ax.imshow(image, aspect='auto', interpolation='nearest')
    ax.set_yticks(range(len(views)))
    ax.set_yticklabels([f"{v}\nD={summary.loc[v, 'n_features']}" for v in views], fontsize=9)
    ax.set_xticks([])
    ax.set_xlabel(f"Samples (N={n_samples})")
    for i, view in enumerate(views):
        ax.text(n_samples + 1, i, f"n={summary.loc[view, 'n_samples_observed']}", va='center', fontsize=8)
    ax.set_title('Data overview', fontsize=12, fontweight='bold')
    sns.despine(ax=ax, left=True, bottom=True)
    plt.tight_layout()
    return _save(fig, outfile, save_svg)


def plot_variance_explained(r2, plot="factors", outfile=None, save_svg=False):
    """
    Variance explained (percent).

    plot="factors": factor x view heatmap per group (r2 with a `factor` column).
    plot="total": bar plot of the total variance explained per view.
    """
    if r2 is None or r2.empty:
        raise AnalysisError("No variance explained values to plot.")
    groups = list(dict.fromkeys(r2['group']))

    if plot == "total":
        fig, ax = plt.subplots(figsize=(max(5, 1.5 * r2['view'].nunique()), 5))
        views = list(dict.fromkeys(r2['view']))
        palette = {v: _view_color(v, i, len(views)) for i, v in enumerate(views)}
        if len(groups) > 1:
            sns.barplot(data=r2, x='view', y='R2', hue='group', ax=ax)
        else:
            sns.barplot(data=r2, x='view', y='R2', hue='view', palette=palette, legend=False, ax=ax)
        ax.set_ylabel('Variance explained (%)')
        ax.set_xlabel('')
        ax.set_title('Total Variance Explained per View', fontsize=12, fontweight='bold')
        plt.xticks(rotation=45, ha='right')
        sns.despine(ax=ax)
        plt.tight_layout()
        return _save(fig, outfile, save_svg)

    if plot != "factors":
        raise ValueError(f"plot must be 'factors' or 'total', got '{plot}'")
    fig, axes = plt.subplots(1, len(groups), figsize=(3 + 1.5 * r2['view'].nunique() * len(groups),
                                                       max(4, 0.4 * r2['factor'].nunique() + 1)),
                             squeeze=False)
    vmax = r2['R2'].max()
    for ax, g in zip(axes[0], groups):
        mat = r2[r2['group'] == g].pivot(index='factor', columns='view', values='R2')
        mat = mat.loc[_factor_order(mat.index), list(dict.fromkeys(r2['view']))]
        sns.heatmap(mat, cmap=PLOT_SETTINGS["r2_cmap"], vmin=0, vmax=vmax, annot=True, fmt=".1f",
                    linewidths=.5, cbar_kws={'label': 'Var. (%)', 'shrink': 0.6}, ax=ax)
        ax.set_title(g if len(groups) > 1 else 'Variance Explained per Factor and View',
                     fontsize=11, fontweight='bold')
        ax.set_xlabel('')
        ax.set_ylabel('')
    plt.tight_layout()
    return _save(fig, outfile, save_svg)


def plot_factor_correlation(corr, outfile=None, save_svg=False):
    fig, ax = plt.subplots(figsize=PLOT_SETTINGS["figsize_heatmap"])
    mask = np.triu(np.ones(corr.shape, dtype=bool), k=1)
    sns.heatmap(corr, mask=mask, cmap='RdBu_r', vmin=-1, vmax=1, center=0, square=True,
                annot=corr.shape[0] <= 15, fmt=".2f", annot_kws={'fontsize': 7},
                cbar_kws={'label': 'Pearson r', 'shrink': 0.7}, ax=ax)
    ax.set_title('Factor Correlation', fontsize=12, fontweight='bold')
    plt.tight_layout()
    return _save(fig, outfile, save_svg)


# --- Factors ------------------------------------------------------------

def plot_factor(factors, metadata, factors_to_plot=None, color_by=None, outfile=None, save_svg=False):
    """Factor values per sample (violin + strip), coloured by a covariate."""
    factors_to_plot = list(factors.columns) if factors_to_plot is None else list(factors_to_plot)
    long_df = factors[factors_to_plot].reset_index(names='sample').melt(
        id_vars='sample', var_name='Factor', value_name='Factor value')
    fig, ax = plt.subplots(figsize=(max(4, 1.2 * len(factors_to_plot) + 2), 5))
    sns.violinplot(data=long_df, x='Factor', y='Factor value', color=PLOT_SETTINGS["box_color"],
                   inner=None, linewidth=0.6, ax=ax)
    for coll in ax.collections:
        coll.set_alpha(PLOT_SETTINGS["box_alpha"])

    if color_by is not None and metadata is not None and color_by in metadata.columns:
        labels = _covariate_labels(metadata, color_by, factors.index)
        long_df[color_by] = long_df['sample'].map(labels)
        palette = _palette_for(color_by, long_df[color_by])
        sns.stripplot(data=long_df, x='Factor', y='Factor value', hue=color_by, palette=palette,
                      hue_order=[l for l in palette if l in set(long_df[color_by])],
                      jitter=0.25, size=4, alpha=PLOT_SETTINGS["scatter_alpha"], ax=ax)
        ax.legend(title=color_by, bbox_to_anchor=(1.02, 1), loc='upper left', frameon=False)
        title = f"Factor values coloured by {color_by}"
    else:
        sns.stripplot(data=long_df, x='Factor', y='Factor value', color='black', jitter=0.25,
                      size=3, alpha=0.5, ax=ax)
        title = "Factor values"
    ax.axhline(0, color='grey', linestyle=':', linewidth=0.8)
    ax.set_xlabel('')
    ax.set_title(title, fontsize=12, fontweight='bold')
    sns.despine(ax=ax)
    plt.tight_layout()
    return _save(fig, outfile, save_svg)


def plot_factors_scatter(factors, metadata, x="Factor1", y="Factor3", color_by=None, shape_by=None,
                         outfile=None, save_svg=False):
    """Scatter plot of two factors."""
    for fac in (x, y):
        if fac not in factors.columns:
            raise AnalysisError(f"Factor '{fac}' not available for scatter plot.")
    plot_df = factors[[x, y]].copy()
    hue, style, palette = None, None, None
    if color_by is not None and metadata is not None and color_by in metadata.columns:
        plot_df[color_by] = _covariate_labels(metadata, color_by, plot_df.index)
        hue = color_by
        palette = _palette_for(color_by, plot_df[color_by])
    if shape_by is not None and metadata is not None and shape_by in metadata.columns:
        plot_df[shape_by] = _covariate_labels(metadata, shape_by, plot_df.index)
        style = shape_by

    fig, ax = plt.subplots(figsize=PLOT_SETTINGS["figsize_factor"])
    sns.scatterplot(data=plot_df, x=x, y=y, hue=hue, style=style, palette=palette,
                    alpha=PLOT_SETTINGS["scatter_alpha"], s=40, edgecolor='black', linewidth=0.3, ax=ax)
    ax.axhline(0, color='grey', linestyle=':', linewidth=0.8)
    ax.axvline(0, color='grey', linestyle=':', linewidth=0.8)
    if hue or style:
        ax.legend(bbox_to_anchor=(1.02, 1), loc='upper left', frameon=False)
    ax.set_title(f'{x} vs {y}', fontsize=12, fontweight='bold')
    sns.despine(ax=ax)
    plt.tight_layout()
    return _save(fig, outfile, save_svg)


# --- Weights and data ---------------------------------------------------

def plot_weights(weights, view, factor, n_labels=10, outfile=None, save_svg=False):
    """All weights of `view` on `factor` ranked, with the top features labelled."""
    w = weights[factor].sort_values()
    top = w.abs().sort_values(ascending=False).head(n_labels).index
    ranks = np.arange(len(w))

    fig, ax = plt.subplots(figsize=PLOT_SETTINGS["figsize_weights"])
    colors = np.where(w.index.isin(top), np.where(w.values >= 0, '#b2182b', '#2166ac'), MISSING_COLOR)
    ax.scatter(w.values, ranks, c=colors, s=12, edgecolor='none')
    for feature in top:
        pos = w.index.get_loc(feature)
        name = feature if len(feature) <= 25 else feature[:22] + "..."
        ha = 'left' if w[feature] >= 0 else 'right'
        offset = 0.02 * max(abs(w.values).max(), 1e-12)
        ax.text(w[feature] + (offset if ha == 'left' else -offset), pos, name, va='center', ha=ha, fontsize=8)
    ax.axvline(0, color='black', linewidth=0.8)
    ax.set_yticks([])
    ax.set_xlabel('Weight')
    ax.set_ylabel('Rank')
    ax.set_title(f'Weights of {factor} in {view}', fontsize=12, fontweight='bold')
    sns.despine(ax=ax, left=True)
    plt.tight_layout()
    return _save(fig, outfile, save_svg)


def plot_top_weights(top, outfile=None, save_svg=False):
    """Horizontal bars of the top weights (output of MofaModel.get_top_weights)."""
    if top.empty:
        raise AnalysisError("No top weights to plot.")
    plot_df = top.iloc[::-1]
    values = plot_df['value'].values
    signs = plot_df['sign'].values
    norm = Normalize(vmin=-max(abs(values)), vmax=max(abs(values)))
    signed = np.where(signs == '+', np.abs(values), -np.abs(values))
    colors = [plt.cm.RdBu_r(norm(v)) for v in signed]

    fig, ax = plt.subplots(figsize=(7, max(3, 0.35 * len(plot_df) + 1)))
    bars = ax.barh(range(len(plot_df)), values, color=colors, height=0.7, edgecolor='black', linewidth=0.5)
    for bar, sign in zip(bars, signs):
        ax.text(bar.get_width(), bar.get_y() + bar.get_height() / 2., f" {sign}",
                va='center', ha='left', fontsize=10, fontweight='bold')
    ax.set_yticks(range(len(plot_df)))
    ax.set_yticklabels(plot_df['feature'], fontsize=9)
    ax.axvline(x=0, color='black', linestyle='-', linewidth=0.8)
    ax.grid(axis='x', alpha=0.3, linestyle=':')
    ax.set_xlabel('Weight' if (values < 0).any() else '|Weight|')
    ax.set_title(f"Top weights: {top['factor'].iloc[0]} in {top['view'].iloc[0]}",
                 fontsize=12, fontweight='bold')
    sns.despine(ax=ax, left=True)
    plt.tight_layout()
    return _save(fig, outfile, save_svg)


def plot_data_heatmap(data, factors, factor, features, annotation=None, color_by=None,
                      outfile=None, save_svg=False):
    """
    Heatmap of `features` (rows) across samples ordered by `factor`.

    Missing values are shown in grey. `annotation` is an optional metadata
    frame; `color_by` selects the column drawn as a colour bar above the heatmap.
    """
    samples = factors[factor].dropna().sort_values().index
    samples = [s for s in samples if s in data.columns]
    features = [f for f in features if f in data.index]
    if not features or not samples:
        raise AnalysisError(f"No data to plot for {factor}.")
    mat = data.loc[features, samples]

    show_annotation = annotation is not None and color_by is not None and color_by in annotation.columns
    fig = plt.figure(figsize=(12, max(3, 0.3 * len(features) + 2)))
    if show_annotation:
        gs = gridspec.GridSpec(3, 2, height_ratios=[0.4, 0.4, max(2, 0.3 * len(features))],
                               width_ratios=[40, 1], hspace=0.05, wspace=0.02)
        ax_factor = fig.add_subplot(gs[0, 0])
        ax_annot = fig.add_subplot(gs[1, 0], sharex=ax_factor)
        ax_heat = fig.add_subplot(gs[2, 0])
        ax_cbar = fig.add_subplot(gs[2, 1])
    else:
        gs = gridspec.GridSpec(2, 2, height_ratios=[0.4, max(2, 0.3 * len(features))],
                               width_ratios=[40, 1], hspace=0.05, wspace=0.02)
        ax_factor = fig.add_subplot(gs[0, 0])
        ax_heat = fig.add_subplot(gs[1, 0])
        ax_cbar = fig.add_subplot(gs[1, 1])

    ax_factor.imshow(factors.loc[samples, factor].values[np.newaxis, :], aspect='auto',
                     cmap='RdBu_r', interpolation='nearest')
    ax_factor.set_yticks([0])
    ax_factor.set_yticklabels([factor], fontsize=8)
    ax_factor.set_xticks([])

    if show_annotation:
        labels = _covariate_labels(annotation, color_by, samples)
        palette = _palette_for(color_by, labels)
        colours = np.array([to_rgba(palette[l]) for l in labels])[np.newaxis, :, :]
        ax_annot.imshow(colours, aspect='auto', interpolation='nearest')
        ax_annot.set_yticks([0])
        ax_annot.set_yticklabels([color_by], fontsize=8)
        ax_annot.set_xticks([])
        handles = [Patch(facecolor=c, label=l) for l, c in palette.items() if l in set(labels)]
        ax_annot.legend(handles=handles, title=color_by, bbox_to_anchor=(1.05, 1), loc='upper left',
                        frameon=False, fontsize=8)

    ax_heat.set_facecolor(MISSING_COLOR)
    sns.heatmap(mat, cmap=PLOT_SETTINGS["weights_cmap"], center=0 if (mat.values < 0).any() else None,
                mask=mat.isna(), xticklabels=False, yticklabels=True, cbar_ax=ax_cbar, ax=ax_heat)
    ax_heat.set_xlabel(f'Samples (ordered by {factor})')
    ax_heat.set_ylabel('')
    ax_factor.set_title(f'Data heatmap: top features of {factor}', fontsize=12, fontweight='bold')
    return _save(fig, outfile, save_svg)


def plot_data_scatter(data, factors, factor, features, color_by=None, metadata=None,
                      outfile=None, save_svg=False):
    """Feature values against factor values, one panel per feature, with a linear fit."""
    features = [f for f in features if f in data.index]
    if not features:
        raise AnalysisError(f"No features to plot against {factor}.")
    n_cols = min(3, len(features))
    n_rows = int(np.ceil(len(features) / n_cols))
    fig, axes = plt.subplots(n_rows, n_cols, figsize=(4 * n_cols, 3.5 * n_rows), squeeze=False)

    palette, labels = None, None
    if color_by is not None and metadata is not None and color_by in metadata.columns:
        labels = _covariate_labels(metadata, color_by, factors.index)
        palette = _palette_for(color_by, labels)

    for ax, feature in zip(axes.flat, features):
        plot_df = pd.DataFrame({'factor': factors[factor],
                                'value': data.loc[feature].reindex(factors.index)}).dropna()
        if labels is not None:
            plot_df[color_by] = labels.reindex(plot_df.index)
        sns.scatterplot(data=plot_df, x='factor', y='value', hue=color_by if labels is not None else None,
                        palette=palette, s=20, alpha=PLOT_SETTINGS["scatter_alpha"], legend=False, ax=ax)
        if len(plot_df) > 2 and plot_df['factor'].nunique() > 1:
            slope, intercept = np.polyfit(plot_df['factor'], plot_df['value'], 1)
            xs = np.linspace(plot_df['factor'].min(), plot_df['factor'].max(), 50)
            ax.plot(xs, slope * xs + intercept, color='black', linewidth=1)
        ax.set_title(feature if len(feature) <= 30 else feature[:27] + "...", fontsize=9)
        ax.set_xlabel(f'{factor} value')
        ax.set_ylabel('')
        sns.despine(ax=ax)
    for ax in list(axes.flat)[len(features):]:
        ax.set_visible(False)
    if palette is not None:
        handles = [Patch(facecolor=c, label=l) for l, c in palette.items()]
        fig.legend(handles=handles, title=color_by, loc='upper right', frameon=False)
    plt.tight_layout()
    return _save(fig, outfile, save_svg)


# --- Associations and networks --------------------------------------------

def plot_association_heatmap(associations, value="Correlation", outfile=None, save_svg=False):
    """Factor x covariate heatmap with significant (FDR) cells marked by '*'."""
    mat = associations.pivot(index='Factor', columns='Covariate', values=value)
    mat = mat.loc[_factor_order(mat.index)]
    sig = associations.pivot(index='Factor', columns='Covariate', values='Significant_FDR')
    sig = sig.reindex(index=mat.index, columns=mat.columns).fillna(False).astype(bool)
    annot = np.where(sig.values, '*', '')

    fig, ax = plt.subplots(figsize=(max(5, 1.2 * mat.shape[1] + 2), max(4, 0.4 * mat.shape[0] + 1)))
    sns.heatmap(mat, cmap='RdBu_r', center=0, vmin=-1, vmax=1, annot=annot, fmt='', linewidths=.5,
                cbar_kws={'label': f'Spearman {value.lower()}'}, ax=ax)
    ax.set_title('Factor-Covariate Associations (* FDR significant)', fontsize=12, fontweight='bold')
    ax.set_xlabel('')
    ax.set_ylabel('')
    plt.tight_layout()
    return _save(fig, outfile, save_svg)


def plot_view_factor_network(r2, threshold=1.0, group=None, outfile=None, save_svg=False):
    """Bipartite view-factor graph; edges where a factor explains > `threshold` % of a view."""
    r2 = r2 if group is None else r2[r2['group'] == group]
    r2 = r2.groupby(['view', 'factor'], as_index=False)['R2'].mean()
    edges = r2[r2['R2'] > threshold]
    if edges.empty:
        raise AnalysisError(f"No factor explains more than {threshold}% variance in any view.")

    G = nx.Graph()
    views = list(dict.fromkeys(r2['view']))
    factor_nodes = _factor_order(edges['factor'].unique())
    G.add_nodes_from(views, kind='view')
    G.add_nodes_from(factor_nodes, kind='factor')
    for _, row in edges.iterrows():
        G.add_edge(row['view'], row['factor'], weight=row['R2'])

    pos = nx.bipartite_layout(G, views, align='vertical')
    fig, ax = plt.subplots(figsize=(8, max(5, 0.4 * len(factor_nodes) + 2)))
    widths = np.array([G[u][v]['weight'] for u, v in G.edges()])
    nx.draw_networkx_edges(G, pos, width=0.5 + 5 * widths / widths.max(), alpha=0.6,
                           edge_color='grey', ax=ax)
    nx.draw_networkx_nodes(G, pos, nodelist=views, node_size=1400,
                           node_color=[_view_color(v, i, len(views)) for i, v in enumerate(views)], ax=ax)
    nx.draw_networkx_nodes(G, pos, nodelist=factor_nodes, node_size=600, node_color='white',
                           edgecolors='black', ax=ax)
    nx.draw_networkx_labels(G, pos, font_size=8, ax=ax)
    ax.set_title(f'Views and Factors (R2 > {threshold}%)', fontsize=12, fontweight='bold')
    ax.axis('off')
    plt.tight_layout()
    return _save(fig, outfile, save_svg)


# --- Enrichment -----------------------------------------------------------

def plot_enrichment_heatmap(result, max_pathways=30, outfile=None, save_svg=False):
    """-log10 adjusted p-values for the most significant feature sets across factors."""
    padj = result['pval_adj']
    best = padj.min(axis=1).sort_values().head(max_pathways).index
    mat = -np.log10(padj.loc[best].clip(lower=1e-300))
    fig, ax = plt.subplots(figsize=(max(6, 0.6 * mat.shape[1] + 4), max(4, 0.3 * mat.shape[0] + 1)))
    sns.heatmap(mat, cmap='Reds', linewidths=.3, cbar_kws={'label': '-log10(adj. p)'}, ax=ax)
    ax.set_yticklabels([t.get_text()[:50] for t in ax.get_yticklabels()], fontsize=7)
    ax.set_ylabel('')
    ax.set_title(f"Enrichment ({result['params']['sign']} weights)", fontsize=12, fontweight='bold')
    plt.tight_layout()
    return _save(fig, outfile, save_svg)


def plot_enrichment(result, factor, max_pathways=15, outfile=None, save_svg=False):
    """Bar plot of -log10 adjusted p-values of the top feature sets for one factor."""
    padj = result['pval_adj'][factor].sort_values().head(max_pathways)
    log_p = -np.log10(padj.clip(lower=1e-300)).iloc[::-1]
    alpha = result['params']['alpha']
    colors = ['#b2182b' if p <= alpha else MISSING_COLOR for p in padj.iloc[::-1]]

    fig, ax = plt.subplots(figsize=(8, max(3, 0.35 * len(log_p) + 1)))
    ax.barh(range(len(log_p)), log_p.values, color=colors, edgecolor='black', linewidth=0.4)
    ax.set_yticks(range(len(log_p)))
    ax.set_yticklabels([p[:60] for p in log_p.index], fontsize=8)
    ax.axvline(-np.log10(alpha), color='black', linestyle='--', linewidth=0.8)
    ax.set_xlabel('-log10(adj. p-value)')
    ax.set_title(f"{factor}: enriched feature sets ({result['params']['sign']} weights)",
                 fontsize=12, fontweight='bold')
    sns.despine(ax=ax)
    plt.tight_layout()
    return _save(fig, outfile, save_svg)


def plot_enrichment_detailed(result, factor, max_pathways=5, max_genes=5, outfile=None, save_svg=False):
    """Feature statistics of the members of the top feature sets, top genes labelled."""
    top_sets = result['pval'][factor].sort_values().head(max_pathways).index
    stats_f = result['feature_statistics'][factor]
    fig, ax = plt.subplots(figsize=(9, max(3, 0.8 * len(top_sets) + 1)))
    rng = np.random.default_rng(0)
    for i, pathway in enumerate(top_sets[::-1]):
        members = result['feature_sets'].columns[result['feature_sets'].loc[pathway].values]
        values = stats_f.loc[members]
        y = i + rng.uniform(-0.2, 0.2, len(values))
        ax.scatter(values.values, y, s=10, color=MISSING_COLOR, edgecolor='none')
        for gene, val in values.sort_values(ascending=False).head(max_genes).items():
            yi = y[list(values.index).index(gene)]
            ax.scatter([val], [yi], s=18, color='#b2182b')
            ax.text(val, yi + 0.15, gene, fontsize=7, ha='center')
    ax.set_yticks(range(len(top_sets)))
    ax.set_yticklabels([p[:50] for p in top_sets[::-1]], fontsize=8)
    ax.set_xlabel('Feature statistic (rectified weight)')
    ax.set_title(f'{factor}: genes driving the top feature sets', fontsize=12, fontweight='bold')
    sns.despine(ax=ax)
    plt.tight_layout()
    return _save(fig, outfile, save_svg)


# --- Survival and classification -----------------------------------------

def plot_cox_hazard_ratios(cox_result, outfile=None, save_svg=False):
    """Forest plot of hazard ratios with 95% confidence intervals."""
    summary = cox_result['summary'].loc[_factor_order(cox_result['summary'].index)].iloc[::-1]
    y = np.arange(len(summary))
    colors = np.where(summary['Significant_FDR'], '#b2182b', 'black')

    fig, ax = plt.subplots(figsize=(6, max(3, 0.35 * len(summary) + 1)))
    ax.errorbar(summary['HR'], y,
                xerr=[summary['HR'] - summary['HR_lower'], summary['HR_upper'] - summary['HR']],
                fmt='none', ecolor='grey', elinewidth=1, capsize=2)
    ax.scatter(summary['HR'], y, c=colors, s=30, zorder=3)
    ax.axvline(1, color='black', linestyle='--', linewidth=0.8)
    ax.set_xscale('log')
    ax.set_yticks(y)
    ax.set_yticklabels(summary.index, fontsize=9)
    ax.set_xlabel('Hazard ratio (95% CI)')
    ax.set_title(f"Cox model (C-index {cox_result['concordance']:.2f}, n={cox_result['n']}, "
                 f"events={cox_result['n_events']})", fontsize=11, fontweight='bold')
    sns.despine(ax=ax)
    plt.tight_layout()
    return _save(fig, outfile, save_svg)


def plot_kaplan_meier(km_result, outfile=None, save_svg=False):
    fig, ax = plt.subplots(figsize=PLOT_SETTINGS["figsize_survival"])
    colors = {'low': '#2166ac', 'high': '#b2182b'}
    for label, kmf in km_result['fitters'].items():
        kmf.plot_survival_function(ax=ax, color=colors.get(label), linewidth=2, ci_show=True)
    ax.set_xlabel(f"Time ({km_result['time_col']})")
    ax.set_ylabel('Probability without event')
    ax.set_ylim(0, 1.05)
    ax.set_title(f"{km_result['factor']} split at {km_result['cutpoint']:.2f} "
                 f"(log-rank p = {km_result['p_value']:.2e})", fontsize=12, fontweight='bold')
    ax.legend(loc='lower left', frameon=False)
    ax.grid(True, alpha=0.3)
    sns.despine(ax=ax)
    plt.tight_layout()
    return _save(fig, outfile, save_svg)


def plot_label_predictions(results, metadata=None, outfile=None, save_svg=False):
    """
    Observed and predicted label counts per covariate, with CV accuracy.

    `results` maps covariate -> predict_missing_labels output.
    """
    if not results:
        raise AnalysisError("No label predictions to plot.")
    fig, axes = plt.subplots(1, len(results), figsize=(4 * len(results), 4), squeeze=False)
    for ax, (cov, res) in zip(axes[0], results.items()):
        classes = list(res['classes'])
        counts = pd.DataFrame(index=pd.Index(classes))
        if metadata is not None and cov in metadata.columns:
            counts['observed'] = metadata[cov].value_counts().reindex(classes).values
        counts['predicted'] = res['predictions'].value_counts().reindex(classes).values
        counts = counts.fillna(0)
        counts.index = [f"{c:g}" if isinstance(c, (int, float, np.number)) else str(c) for c in counts.index]
        bar_colors = {'observed': '#bdbdbd', 'predicted': '#3b528b'}
        counts.plot(kind='bar', ax=ax, color=[bar_colors[c] for c in counts.columns], edgecolor='black', rot=0)
        cv = res['cv_accuracy']
        cv_text = f"CV acc. {np.mean(cv):.2f}" if cv is not None else "CV skipped"
        ax.set_title(f"{cov} ({cv_text})", fontsize=11, fontweight='bold')
        ax.set_xlabel(cov)
        ax.set_ylabel('Samples')
        sns.despine(ax=ax)
    plt.tight_layout()
    return _save(fig, outfile, save_svg)
