#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import mlsync
import mlsync.notes

from typing import Optional, Iterator, List, Tuple

logger = mlsync.logger


class MailCommitMapping:
    """Upstream commit to mail mapping, and its reverse.

    refs/notes/commit-to-mail annotates upstream commits with the
    message-id(s) of the patch mails they came from.  update() folds every
    change to it since the last run into refs/notes/mail-to-commit, keyed by
    message-id, so that a patch mail can be looked up directly.
    """

    def __init__(self, gitdir: Optional[str], config: Optional[dict] = None):
        if config is None:
            config = dict(mlsync.DEFAULT_CONFIG)
        self.gitdir = gitdir
        self.config = config
        self.commit2mail = mlsync.notes.GitNotes(gitdir, config, notes_ref=mlsync.notes.COMMIT_TO_MAIL_REF)
        self.mail2commit = mlsync.notes.GitNotes(gitdir, config, notes_ref=mlsync.notes.MAIL_TO_COMMIT_REF)

    def get_commit(self, msgid: str) -> Optional[str]:
        return self.mail2commit.get_string(msgid)

    def _read_msgids(self, blob: str) -> List[str]:
        if blob.strip('0') == '':
            return list()
        ecode, out = mlsync.git_run_command(self.gitdir, ['cat-file', 'blob', blob])
        if ecode > 0:
            raise mlsync.NoteStoreError(f'Could not read note blob {blob}')
        msgids = list()
        for line in out.splitlines():
            line = line.strip().strip('<>')
            if line:
                msgids.append(line)
        return msgids

    def iter_note_changes(self, since: Optional[str], tip: str) -> Iterator[Tuple[str, str, str, str]]:
        """Yield (status, commit, old blob, new blob) for every note touched."""
        revrange = f'{since}..{tip}' if since else tip
        ecode, out = mlsync.git_run_command(self.gitdir, ['rev-list', '--reverse', revrange], logstderr=True)
        if ecode > 0:
            raise mlsync.NoteStoreError(f'Could not list {revrange}: {out.strip()}')
        for notecommit in out.split():
            gitargs = ['diff-tree', '-r', '--root', '--no-commit-id', '--no-renames', notecommit]
            for line in mlsync.git_get_command_lines(self.gitdir, gitargs):
                # :100644 100644 <old> <new> M\t<fan-out path>
                meta, path = line.split('\t', 1)
                oldblob, newblob, status = meta.split()[2:5]
                yield status, path.replace('/', ''), oldblob, newblob

    def update(self) -> int:
        tip = mlsync.git_revparse_obj(self.gitdir, mlsync.notes.COMMIT_TO_MAIL_REF)
        if not tip:
            raise mlsync.NoteStoreError(f'{mlsync.notes.COMMIT_TO_MAIL_REF} does not exist')
        statekey = self.config['mapping-state-key']
        state = self.mail2commit.get(statekey) or dict()
        since = state.get('latest_revision')
        if since == tip:
            logger.debug('%s is still at %s', mlsync.notes.COMMIT_TO_MAIL_REF, tip)
            return 0

        changed = 0
        for status, commit, oldblob, newblob in self.iter_note_changes(since, tip):
            if status in ('M', 'D'):
                for msgid in self._read_msgids(oldblob):
                    # it may have been claimed by another commit since
                    if self.get_commit(msgid) == commit:
                        self.mail2commit.remove(msgid)
                        changed += 1
            if status in ('A', 'M'):
                for msgid in self._read_msgids(newblob):
                    self.mail2commit.set_string(msgid, commit, force_create=True)
                    changed += 1

        state['latest_revision'] = tip
        self.mail2commit.set(statekey, state, force_create=True)
        logger.info('Updated %s mail-to-commit entries up to %s', changed, tip)
        return changed


def get_upstream_commit(gitdir: Optional[str], msgid: str) -> Optional[str]:
    """Look up which upstream commit a message-id ended up as."""
    return MailCommitMapping(gitdir).get_commit(msgid)
