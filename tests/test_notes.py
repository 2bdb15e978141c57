import pytest  # noqa
import mlsync
import mlsync.notes
import mlsync.series

PR_URL = 'https://github.com/mlsync/git/pull/1'


def _clone(remotedir, dest):
    ecode, out = mlsync.git_run_command(None, ['clone', '-q', remotedir, str(dest)], logstderr=True)
    assert ecode == 0, out
    return str(dest)


def test_set_get(gitdir, notesrepo):
    notes = mlsync.notes.GitNotes(gitdir)
    assert notes.get_string('hello') is None
    assert not notes.ref_exists()

    notes.set_string('hello', 'world', force_create=True)
    assert notes.get_string('hello') == 'world'
    # the key itself has to show up in the notes history
    assert '\n+hello' in notesrepo.git(['log', '-p', 'refs/notes/mlsync'])

    metadata = {
        'base_commit': '0123456789012345678901234567890123456789',
        'base_label': 'mlsync:test',
        'cover_letter_message_id': 'cover.1234567890.mlsync.pull.1@github.com',
        'head_commit': '1023456789012345678901234567890123456789',
        'head_label': 'somebody:test2',
        'iteration': 1,
        'pull_request_url': PR_URL,
    }
    notes.set(PR_URL, metadata)
    assert notes.get(PR_URL) == metadata
    assert notes.get_string(PR_URL).startswith('{"base_commit":')


def test_not_initialized(gitdir):
    notes = mlsync.notes.GitNotes(gitdir)
    with pytest.raises(mlsync.NotInitialized):
        notes.set('key', {'a': 1})
    assert not notes.ref_exists()


def test_overwrite(gitdir):
    notes = mlsync.notes.GitNotes(gitdir)
    notes.set('key', {'v': 1}, force_create=True)
    notes.set('key', {'v': 2})
    assert notes.get('key') == {'v': 2}
    assert notes.has_key('key')
    assert not notes.has_key('other')


def test_empty_key(gitdir):
    notes = mlsync.notes.GitNotes(gitdir)
    notes.set('', {'open_prs': {}}, force_create=True)
    assert notes.get('') == {'open_prs': {}}
    assert mlsync.notes.GitNotes.hash_key('') == mlsync.notes.EMPTY_BLOB


def test_hash_key(notesrepo):
    assert mlsync.notes.GitNotes.hash_key('a@x') == notesrepo.git(['hash-object', '--stdin'], stdin=b'a@x\n')


def test_get_keys(gitdir):
    notes = mlsync.notes.GitNotes(gitdir)
    assert notes.get_keys() == set()
    notes.set('one@x', {}, force_create=True)
    notes.set('two@x', {})
    keys = notes.get_keys()
    assert mlsync.notes.GitNotes.hash_key('one@x') in keys
    assert mlsync.notes.GitNotes.hash_key('two@x') in keys
    assert mlsync.notes.GitNotes.hash_key('three@x') not in keys


def test_commit_notes(gitdir, notesrepo):
    commit = notesrepo.commit({'a.txt': 'a\n'})
    notes = mlsync.notes.GitNotes(gitdir)
    assert notes.get_commit_notes(commit) is None
    notes.append_commit_note(commit, 'v1@x')
    assert notes.get_last_commit_note(commit) == 'v1@x'
    notes.append_commit_note(commit, 'v2@x')
    assert notes.get_commit_notes(commit) == 'v1@x\n\nv2@x'
    assert notes.get_last_commit_note(commit) == 'v2@x'


def test_update_refuses_unknown_ref(gitdir, remotedir, config):
    config['notes-remote'] = remotedir
    notes = mlsync.notes.GitNotes(gitdir, config, notes_ref='refs/heads/master')
    with pytest.raises(mlsync.UnknownRef):
        notes.update()


def test_update(tmp_path, remotedir, config):
    config['notes-remote'] = remotedir
    first = mlsync.notes.GitNotes(_clone(remotedir, tmp_path / 'first'), config)
    first.set('key', 'one', force_create=True)
    first.push()

    second = mlsync.notes.GitNotes(_clone(remotedir, tmp_path / 'second'), config)
    assert second.get('key') is None
    second.update()
    assert second.get('key') == 'one'


def test_push_reapplies_on_rejection(tmp_path, remotedir, config):
    config['notes-remote'] = remotedir
    first = mlsync.notes.GitNotes(_clone(remotedir, tmp_path / 'first'), config)
    second = mlsync.notes.GitNotes(_clone(remotedir, tmp_path / 'second'), config)

    first.set('first@x', {'by': 'first'}, force_create=True)
    first.push()

    # second never saw what first pushed
    second.set('second@x', {'by': 'second'}, force_create=True)
    second.push()
    assert second.get('first@x') == {'by': 'first'}
    assert second.get('second@x') == {'by': 'second'}

    first.update()
    assert first.get('second@x') == {'by': 'second'}
    # the key blob travelled along as well
    ecode, out = mlsync.git_run_command(first.gitdir, ['log', '-p', 'refs/notes/mlsync'])
    assert '\n+second@x' in out


def test_push_gives_up(tmp_path, remotedir, config, monkeypatch):
    config['notes-remote'] = remotedir
    config['notes-push-attempts'] = '2'
    first = mlsync.notes.GitNotes(_clone(remotedir, tmp_path / 'first'), config)
    second = mlsync.notes.GitNotes(_clone(remotedir, tmp_path / 'second'), config)
    first.set('first@x', 1, force_create=True)
    first.push()

    calls = list()
    monkeypatch.setattr(second, '_reapply_on_remote_tip', lambda remote: calls.append(remote))
    second.set('second@x', 2, force_create=True)
    with pytest.raises(mlsync.ConcurrentWriteConflict):
        second.push()
    assert calls == [remotedir, remotedir]


def test_push_without_remote(gitdir):
    notes = mlsync.notes.GitNotes(gitdir)
    notes.set('key', 1, force_create=True)
    with pytest.raises(mlsync.NoteStoreError):
        notes.push()


def test_record_series(gitdir, notesrepo):
    c1 = notesrepo.commit({'a.txt': 'a\n'})
    c2 = notesrepo.commit({'a.txt': 'b\n'})
    notes = mlsync.notes.GitNotes(gitdir)
    meta = mlsync.series.record_series(notes, PR_URL, 'base', c2, 'cover.v1@x',
                                       [(c1, 'p1.v1@x'), (c2, 'p2.v1@x')])
    assert meta['iteration'] == 1
    assert notes.get('cover.v1@x') == {'message_id': 'cover.v1@x', 'pull_request_url': PR_URL}
    assert notes.get('p2.v1@x')['original_commit'] == c2
    assert mlsync.series.get_msgid_for_commit(notes, c1) == 'p1.v1@x'

    meta = mlsync.series.record_series(notes, PR_URL, 'base', c2, 'cover.v2@x',
                                       [(c1, 'p1.v2@x'), (c2, 'p2.v2@x')])
    assert meta['iteration'] == 2
    assert meta['references_message_ids'] == ['cover.v1@x']
    assert mlsync.series.get_series_metadata(notes, PR_URL)['patches'][1] == {'commit': c2,
                                                                             'message_id': 'p2.v2@x'}
    assert mlsync.series.get_msgid_for_commit(notes, c1) == 'p1.v2@x'


def test_remove(gitdir):
    notes = mlsync.notes.GitNotes(gitdir)
    # nothing to remove from yet
    notes.remove('key')
    notes.set('key', 1, force_create=True)
    notes.set('other', 2)
    notes.remove('key')
    assert notes.get('key') is None
    assert notes.get('other') == 2
    notes.remove('key')
    assert not notes.has_key('key')


def test_push_reapplies_removal(tmp_path, remotedir, config):
    config['notes-remote'] = remotedir
    first = mlsync.notes.GitNotes(_clone(remotedir, tmp_path / 'first'), config)
    first.set('stale@x', 1, force_create=True)
    first.push()

    second = mlsync.notes.GitNotes(_clone(remotedir, tmp_path / 'second'), config)
    second.update()
    first.set('fresh@x', 2)
    first.push()

    second.remove('stale@x')
    second.push()
    assert second.get('stale@x') is None
    assert second.get('fresh@x') == 2
    first.update()
    assert first.get('stale@x') is None


def test_open_prs(gitdir, notesrepo):
    c1 = notesrepo.commit({'a.txt': 'a\n'})
    notes = mlsync.notes.GitNotes(gitdir)
    mlsync.series.record_series(notes, PR_URL, 'base', c1, 'cover.v1@x', [(c1, 'p1.v1@x')])
    other = 'https://github.com/mlsync/git/pull/2'
    mlsync.series.record_series(notes, other, 'base', c1, None, [(c1, 'p1.v1.2@x')])
    assert notes.get('')['open_prs'] == {PR_URL: 'cover.v1@x', other: ''}

    meta = mlsync.series.set_upstream_branch(notes, PR_URL, 'ml/some-topic')
    assert meta['upstream_branch'] == 'ml/some-topic'
    assert mlsync.series.get_series_metadata(notes, PR_URL)['iteration'] == 1
    with pytest.raises(mlsync.NoteStoreError):
        mlsync.series.set_upstream_branch(notes, 'https://github.com/mlsync/git/pull/3', 'ml/x')

    assert mlsync.series.close_pull_request(notes, other)
    assert not mlsync.series.close_pull_request(notes, other)
    assert notes.get('')['open_prs'] == {PR_URL: 'cover.v1@x'}
    # the series itself is still known
    assert mlsync.series.get_series_metadata(notes, other)['iteration'] == 1
