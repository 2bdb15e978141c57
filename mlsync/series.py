#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import mlsync
import mlsync.notes

from typing import Optional, List, Tuple

logger = mlsync.logger


def get_series_metadata(notes: mlsync.notes.GitNotes, pr_url: str) -> Optional[dict]:
    return notes.get(pr_url)


def get_msgid_for_commit(notes: mlsync.notes.GitNotes, commit: str) -> Optional[str]:
    # the last fragment is the latest iteration that carried this commit
    return notes.get_last_commit_note(commit)


def record_series(notes: mlsync.notes.GitNotes, pr_url: str, base_commit: str, head_commit: str,
                  cover_msgid: Optional[str], patches: List[Tuple[str, str]],
                  base_label: Optional[str] = None, head_label: Optional[str] = None) -> dict:
    """Record a freshly sent iteration of a pull request.

    patches is a list of (commit, message-id) tuples, in series order.  Every
    mail gets its own metadata note so that replies can be routed back to the
    pull request, and each commit gets the message-id appended to its own
    note.
    """
    metadata = get_series_metadata(notes, pr_url)
    if metadata is None:
        metadata = {
            'pull_request_url': pr_url,
            'iteration': 0,
            'references_message_ids': list(),
        }
    elif metadata.get('cover_letter_message_id'):
        metadata.setdefault('references_message_ids', list())
        metadata['references_message_ids'].append(metadata['cover_letter_message_id'])

    metadata['iteration'] = metadata.get('iteration', 0) + 1
    metadata['base_commit'] = base_commit
    metadata['head_commit'] = head_commit
    if base_label:
        metadata['base_label'] = base_label
    if head_label:
        metadata['head_label'] = head_label
    metadata['cover_letter_message_id'] = cover_msgid
    metadata['patches'] = [{'commit': commit, 'message_id': msgid} for commit, msgid in patches]

    logger.info('Recording v%s of %s', metadata['iteration'], pr_url)
    if cover_msgid:
        notes.set(cover_msgid, {
            'message_id': cover_msgid,
            'pull_request_url': pr_url,
        }, force_create=True)
    for commit, msgid in patches:
        notes.set(msgid, {
            'message_id': msgid,
            'original_commit': commit,
            'pull_request_url': pr_url,
        }, force_create=True)
        if mlsync.git_commit_exists(notes.gitdir, commit):
            notes.append_commit_note(commit, msgid)
        else:
            logger.debug('Commit %s not available locally, not annotating it', commit)

    notes.set(pr_url, metadata, force_create=True)

    options = notes.get('') or dict()
    options.setdefault('open_prs', dict())[pr_url] = cover_msgid or ''
    notes.set('', options, force_create=True)
    return metadata


def set_upstream_branch(notes: mlsync.notes.GitNotes, pr_url: str, branch: str) -> dict:
    """Remember which topic branch upstream picked the pull request up as."""
    metadata = get_series_metadata(notes, pr_url)
    if metadata is None:
        raise mlsync.NoteStoreError(f'No series recorded for {pr_url}')
    metadata['upstream_branch'] = branch
    notes.set(pr_url, metadata)
    return metadata


def close_pull_request(notes: mlsync.notes.GitNotes, pr_url: str) -> bool:
    options = notes.get('')
    if not options or pr_url not in options.get('open_prs', dict()):
        return False
    del options['open_prs'][pr_url]
    notes.set('', options)
    logger.info('No longer tracking %s as open', pr_url)
    return True
