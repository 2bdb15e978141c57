#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: GPL-2.0-or-later
# Copyright (C) 2020 by the Linux Foundation
#
import re
import json
import hashlib

import mlsync

from typing import Optional, Set, Any, List, Tuple

logger = mlsync.logger

DEFAULT_NOTES_REF = 'refs/notes/mlsync'
COMMIT_TO_MAIL_REF = 'refs/notes/commit-to-mail'
MAIL_TO_COMMIT_REF = 'refs/notes/mail-to-commit'
# Only these may be fast-forwarded from a remote by update()
UPDATABLE_REFS = (DEFAULT_NOTES_REF, COMMIT_TO_MAIL_REF, MAIL_TO_COMMIT_REF)

EMPTY_BLOB = 'e69de29bb2d1d6434b8b29ae775ad8c2e48c5391'

PUSH_REJECTED_RE = re.compile(r'\[rejected\]|non-fast-forward|fetch first|stale info', flags=re.I)


def to_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(',', ':'))


class GitNotes:
    """Key/value store on top of a git notes ref.

    Every key is hashed the way git would hash a blob containing the key plus
    a trailing newline, and the value is stored as the note attached to that
    blob.  Writes are local until push(), which re-applies them on top of the
    remote tip whenever somebody else got there first.
    """
    gitdir: Optional[str]
    notes_ref: str
    remote: Optional[str]
    _pending: List[Tuple[str, str, str]]

    def __init__(self, gitdir: Optional[str], config: Optional[dict] = None, notes_ref: Optional[str] = None):
        if config is None:
            config = dict(mlsync.DEFAULT_CONFIG)
        self.gitdir = gitdir
        self.notes_ref = notes_ref or config.get('notes-ref') or DEFAULT_NOTES_REF
        self.remote = config.get('notes-remote')
        try:
            self.push_attempts = int(config.get('notes-push-attempts', 5))
        except ValueError:
            logger.critical('ERROR: notes-push-attempts must be an integer: %s', config['notes-push-attempts'])
            self.push_attempts = 5
        # writes made since the last successful push or update
        self._pending = list()

    def __repr__(self):
        return f'GitNotes({self.gitdir}, {self.notes_ref})'

    @staticmethod
    def hash_key(key: str) -> str:
        if not key:
            return EMPTY_BLOB
        bkey = key.encode() + b'\n'
        return hashlib.sha1(b'blob %d\x00' % len(bkey) + bkey).hexdigest()

    def _notes(self, args: List[str], stdin: Optional[bytes] = None, logstderr: bool = True) -> Tuple[int, str]:
        gitargs = ['notes', f'--ref={self.notes_ref}'] + args
        return mlsync.git_run_command(self.gitdir, gitargs, stdin=stdin, logstderr=logstderr)

    def _notes_checked(self, args: List[str], stdin: Optional[bytes] = None) -> str:
        ecode, out = self._notes(args, stdin=stdin)
        if ecode > 0:
            raise mlsync.NoteStoreError('git notes %s failed: %s' % (' '.join(args), out.strip()))
        return out

    def ref_exists(self) -> bool:
        return mlsync.git_revparse_obj(self.gitdir, self.notes_ref) is not None

    def get_string(self, key: str) -> Optional[str]:
        ecode, out = mlsync.git_run_command(self.gitdir, ['notes', f'--ref={self.notes_ref}', 'show',
                                                          GitNotes.hash_key(key)])
        if ecode > 0:
            return None
        if out.endswith('\n'):
            out = out[:-1]
        return out

    def get(self, key: str) -> Optional[Any]:
        jdata = self.get_string(key)
        if jdata is None:
            return None
        return json.loads(jdata)

    def _ensure_key_blob(self, key: str, obj: str, force: bool = False) -> None:
        if not key:
            # Make sure the empty blob exists before we annotate it
            mlsync.git_run_command(self.gitdir, ['hash-object', '-w', '--stdin'], stdin=b'')
            return
        if not force and mlsync.git_revparse_obj(self.gitdir, f'{obj}^{{blob}}'):
            return
        # Annotate the notes ref's tip itself with the key and drop that note
        # again, which leaves a blob with the key as its contents reachable
        # from the notes history
        if self.ref_exists():
            self._notes_checked(['add', '-m', key, self.notes_ref])
            self._notes_checked(['remove', f'{self.notes_ref}^'])
        else:
            mlsync.git_run_command(self.gitdir, ['hash-object', '-w', '--stdin'], stdin=b'')
            self._notes_checked(['add', '-m', key, EMPTY_BLOB])
            self._notes_checked(['remove', EMPTY_BLOB])

    def _set_string(self, key: str, value: str, force_key_blob: bool = False) -> None:
        obj = GitNotes.hash_key(key)
        self._ensure_key_blob(key, obj, force=force_key_blob)
        self._notes_checked(['add', '-f', '-F', '-', obj], stdin=value.encode())

    def set_string(self, key: str, value: str, force_create: bool = False) -> None:
        if not force_create and not self.ref_exists():
            raise mlsync.NotInitialized(f'{self.notes_ref} does not exist yet')
        self._set_string(key, value)
        self._pending.append(('set', key, value))

    def set(self, key: str, value: Any, force_create: bool = False) -> None:
        self.set_string(key, to_json(value), force_create=force_create)

    def remove(self, key: str) -> None:
        if not self.ref_exists():
            return
        self._notes_checked(['remove', '--ignore-missing', GitNotes.hash_key(key)])
        self._pending.append(('remove', key, ''))

    def append_commit_note(self, commit: str, note: str) -> None:
        self._notes_checked(['append', '-m', note, commit])
        self._pending.append(('append', commit, note))

    def get_commit_notes(self, commit: str) -> Optional[str]:
        ecode, out = self._notes(['show', commit], logstderr=False)
        if ecode > 0:
            return None
        return out.rstrip('\n')

    def get_last_commit_note(self, commit: str) -> Optional[str]:
        notes = self.get_commit_notes(commit)
        if notes is None:
            return None
        # git notes append separates fragments with exactly one blank line
        return re.sub(r'^[\s\S]*\n\n', '', notes)

    def get_keys(self) -> Set[str]:
        keys = set()
        if not self.ref_exists():
            return keys
        for line in mlsync.git_get_command_lines(self.gitdir, ['ls-tree', '-r', '--name-only',
                                                               f'{self.notes_ref}:']):
            # strip the fan-out
            keys.add(line.replace('/', ''))
        return keys

    def has_key(self, key: str) -> bool:
        ecode, out = self._notes(['list', GitNotes.hash_key(key)], logstderr=False)
        return ecode == 0

    def update(self, remote: Optional[str] = None) -> None:
        if self.notes_ref not in UPDATABLE_REFS:
            raise mlsync.UnknownRef(f'Refusing to update {self.notes_ref}')
        remote = self._get_remote(remote)
        logger.info('Updating %s from %s', self.notes_ref, remote)
        # no leading + so that only fast-forwards are accepted
        ecode, out = mlsync.git_run_command(self.gitdir, ['fetch', remote, f'{self.notes_ref}:{self.notes_ref}'],
                                            logstderr=True)
        if ecode > 0:
            raise mlsync.NoteStoreError(f'Could not update {self.notes_ref} from {remote}: {out.strip()}')
        self._pending = list()

    def push(self, remote: Optional[str] = None) -> None:
        remote = self._get_remote(remote)
        for attempt in range(1, self.push_attempts + 1):
            ecode, out = mlsync.git_run_command(self.gitdir, ['push', remote, f'{self.notes_ref}:{self.notes_ref}'],
                                                logstderr=True)
            if ecode == 0:
                logger.debug('Pushed %s to %s', self.notes_ref, remote)
                self._pending = list()
                return
            if not PUSH_REJECTED_RE.search(out):
                raise mlsync.NoteStoreError(f'Could not push {self.notes_ref} to {remote}: {out.strip()}')
            logger.info('Push of %s rejected (attempt %s/%s), re-applying on top of %s',
                        self.notes_ref, attempt, self.push_attempts, remote)
            self._reapply_on_remote_tip(remote)

        raise mlsync.ConcurrentWriteConflict(f'Gave up pushing {self.notes_ref} to {remote} '
                                             f'after {self.push_attempts} attempts')

    def _get_remote(self, remote: Optional[str]) -> str:
        if remote is None:
            remote = self.remote
        if not remote:
            raise mlsync.NoteStoreError('No remote configured for %s' % self.notes_ref)
        return remote

    def _reapply_on_remote_tip(self, remote: str) -> None:
        ecode, out = mlsync.git_run_command(self.gitdir, ['fetch', remote, self.notes_ref], logstderr=True)
        if ecode > 0:
            raise mlsync.NoteStoreError(f'Could not fetch {self.notes_ref} from {remote}: {out.strip()}')
        tip = mlsync.git_revparse_obj(self.gitdir, 'FETCH_HEAD')
        if not tip:
            raise mlsync.NoteStoreError(f'Could not resolve the tip of {self.notes_ref} on {remote}')
        ecode, out = mlsync.git_run_command(self.gitdir, ['update-ref', self.notes_ref, tip], logstderr=True)
        if ecode > 0:
            raise mlsync.NoteStoreError(f'Could not reset {self.notes_ref} to {tip}: {out.strip()}')
        logger.debug('Re-applying %s notes changes on top of %s', len(self._pending), tip)
        for op, target, value in self._pending:
            if op == 'set':
                # the key blob has to be reachable from the new history too
                self._set_string(target, value, force_key_blob=True)
            elif op == 'remove':
                self._notes_checked(['remove', '--ignore-missing', GitNotes.hash_key(target)])
            else:
                self._notes_checked(['append', '-m', value, target])

