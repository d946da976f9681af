"""End-to-end tests for processing requests against a profile."""

import os

import pytest
import yaml

import pygen  # noqa: E402


def _package(name, version, **extra):
    data = {"name": name, "version": version, "source": {"type": "url", "uri": f"https://example.org/{name}"}}
    data.update(extra)
    return pygen.Package(data)


def _make_item(package, output="out"):
    path = package.item(output)
    os.makedirs(os.path.join(path, "bin"), exist_ok=True)
    with open(os.path.join(path, "bin", f"{package.name}-{output}"), "w") as f:
        f.write(f"{package.version}\n")
    return path


def _session(tmp_path, *packages):
    for p in packages:
        for output in p.outputs:
            _make_item(p, output)
    index = pygen.PackageIndex.from_packages(list(packages))
    return pygen.Session(db_path=str(tmp_path / "pygen.db"), index=index)


def _request(tmp_path, actions, **kwargs):
    return pygen.Request(actions, profile=str(tmp_path / "profiles" / "work"), **kwargs)


def _specs(profile):
    return [e.spec() for e in profile.manifest()]


def test_upgrade_all_moves_upgraded_entry_last(tmp_path):
    a10, a12, b20 = _package("ea", "1.0"), _package("ea", "1.2"), _package("eb", "2.0")
    session = _session(tmp_path, a10, a12, b20)
    pygen.process_request(session, _request(tmp_path, [pygen.Install("ea@1.0"), pygen.Install("eb")]))
    profile = pygen.Profile(str(tmp_path / "profiles" / "work"))
    assert _specs(profile) == ["ea@1.0", "eb@2.0"]

    result = pygen.process_request(session, _request(tmp_path, [pygen.Upgrade("")]))
    assert result.outcome == pygen.PUBLISHED
    assert _specs(profile) == ["eb@2.0", "ea@1.2"]
    assert profile.generation_numbers() == [1, 2]
    session.close()


def test_delete_generations_range(tmp_path):
    session = _session(tmp_path)
    profile = pygen.Profile(str(tmp_path / "profiles" / "work"))
    os.makedirs(profile.dir)
    for number in range(7):
        target = tmp_path / f"target{number}"
        target.mkdir()
        os.symlink(str(target), os.path.join(profile.dir, f"work-{number}-1700000000-link"))
    profile.switch_to_generation(3)
    pygen.process_request(session, _request(tmp_path, [pygen.DeleteGenerations("0..5")]))
    assert profile.generation_numbers() == [3, 6]
    assert profile.generation_link(0) is not None
    assert profile.current_number() == 3
    session.close()


def test_roll_back_at_generation_zero(tmp_path):
    session = _session(tmp_path)
    with pytest.raises(pygen.GenerationNotFound):
        pygen.process_request(session, _request(tmp_path, [pygen.RollBack()]))
    assert not os.path.lexists(str(tmp_path / "profiles" / "work"))
    session.close()


def test_dry_run_install_of_installed_package(tmp_path):
    a = _package("ec", "1.0")
    session = _session(tmp_path, a)
    pygen.process_request(session, _request(tmp_path, [pygen.Install("ec")]))
    profile = pygen.Profile(str(tmp_path / "profiles" / "work"))
    links = sorted(os.listdir(profile.dir))
    pointer = os.readlink(profile.path)

    result = pygen.process_request(session, _request(tmp_path, [pygen.Install("ec")], dry_run=True))
    assert result.outcome == pygen.NOTHING_TO_DO
    assert sorted(os.listdir(profile.dir)) == links
    assert os.readlink(profile.path) == pointer
    session.close()


def test_dry_run_install_of_new_package(tmp_path):
    a, b = _package("ed", "1.0"), _package("ee", "1.0")
    session = _session(tmp_path, a, b)
    pygen.process_request(session, _request(tmp_path, [pygen.Install("ed")]))
    result = pygen.process_request(session, _request(tmp_path, [pygen.Install("ee")], dry_run=True))
    profile = pygen.Profile(str(tmp_path / "profiles" / "work"))
    assert result.outcome == pygen.DRY_RUN
    assert profile.generation_numbers() == [1]
    assert _specs(profile) == ["ed@1.0"]
    session.close()


def test_roll_back_and_reinstall(tmp_path):
    """Rolling back from generation 1 goes to the empty generation 0."""
    a, b = _package("ef", "1.0"), _package("eg", "1.0")
    session = _session(tmp_path, a, b)
    profile = pygen.Profile(str(tmp_path / "profiles" / "work"))
    pygen.process_request(session, _request(tmp_path, [pygen.Install("ef")]))
    pygen.process_request(session, _request(tmp_path, [pygen.Install("eg")]))
    assert profile.current_number() == 2

    pygen.process_request(session, _request(tmp_path, [pygen.RollBack()]))
    assert profile.current_number() == 1
    assert _specs(profile) == ["ef@1.0"]

    pygen.process_request(session, _request(tmp_path, [pygen.RollBack()]))
    assert profile.current_number() == 0
    assert _specs(profile) == []

    pygen.process_request(session, _request(tmp_path, [pygen.Install("eg")]))
    assert profile.current_number() == 1
    assert _specs(profile) == ["eg@1.0"]
    assert profile.generation_numbers() == [1, 2]
    session.close()


def test_switch_generation(tmp_path):
    a, b = _package("eh", "1.0"), _package("ei", "1.0")
    session = _session(tmp_path, a, b)
    profile = pygen.Profile(str(tmp_path / "profiles" / "work"))
    pygen.process_request(session, _request(tmp_path, [pygen.Install("eh")]))
    pygen.process_request(session, _request(tmp_path, [pygen.Install("ei")]))
    pygen.process_request(session, _request(tmp_path, [pygen.SwitchGeneration("1")]))
    assert profile.current_number() == 1
    pygen.process_request(session, _request(tmp_path, [pygen.SwitchGeneration("+1")]))
    assert profile.current_number() == 2
    with pytest.raises(pygen.GenerationNotFound):
        pygen.process_request(session, _request(tmp_path, [pygen.SwitchGeneration("9")]))
    with pytest.raises(pygen.UnsupportedPatternSyntax):
        pygen.process_request(session, _request(tmp_path, [pygen.SwitchGeneration("two")]))
    session.close()


def test_admin_actions_on_missing_profile(tmp_path):
    session = _session(tmp_path)
    with pytest.raises(pygen.ProfileNotFound):
        pygen.process_request(session, _request(tmp_path, [pygen.SwitchGeneration("1")]))
    with pytest.raises(pygen.ProfileNotFound):
        pygen.process_request(session, _request(tmp_path, [pygen.DeleteGenerations("")]))
    session.close()


def test_delete_generations_no_match(tmp_path):
    a = _package("ej", "1.0")
    session = _session(tmp_path, a)
    pygen.process_request(session, _request(tmp_path, [pygen.Install("ej")]))
    with pytest.raises(pygen.NoMatchingGeneration):
        pygen.process_request(session, _request(tmp_path, [pygen.DeleteGenerations("5")]))
    with pytest.raises(pygen.UnsupportedPatternSyntax):
        pygen.process_request(session, _request(tmp_path, [pygen.DeleteGenerations("yesterday")]))
    session.close()


def test_remove(tmp_path):
    a, b = _package("ek", "1.0", outputs=["out", "doc"]), _package("el", "1.0")
    session = _session(tmp_path, a, b)
    profile = pygen.Profile(str(tmp_path / "profiles" / "work"))
    pygen.process_request(
        session, _request(tmp_path, [pygen.Install("ek"), pygen.Install("ek:doc"), pygen.Install("el")])
    )
    assert _specs(profile) == ["ek@1.0", "ek@1.0:doc", "el@1.0"]
    pygen.process_request(session, _request(tmp_path, [pygen.Remove("ek:doc")]))
    assert _specs(profile) == ["ek@1.0", "el@1.0"]
    with pytest.raises(pygen.PackageNotFound, match="not found in profile"):
        pygen.process_request(session, _request(tmp_path, [pygen.Remove("nothere")]))
    assert profile.current_number() == 2
    session.close()


def test_removal_wins_over_upgrade(tmp_path):
    a10, a12 = _package("em", "1.0"), _package("em", "1.2")
    session = _session(tmp_path, a10, a12)
    profile = pygen.Profile(str(tmp_path / "profiles" / "work"))
    pygen.process_request(session, _request(tmp_path, [pygen.Install("em@1.0")]))
    pygen.process_request(session, _request(tmp_path, [pygen.Remove("em"), pygen.Upgrade("")]))
    assert _specs(profile) == []
    session.close()


def test_do_not_upgrade(tmp_path):
    a10, a12 = _package("en", "1.0"), _package("en", "1.2")
    b10, b11 = _package("eo", "1.0"), _package("eo", "1.1")
    session = _session(tmp_path, a10, a12, b10, b11)
    profile = pygen.Profile(str(tmp_path / "profiles" / "work"))
    pygen.process_request(session, _request(tmp_path, [pygen.Install("en@1.0"), pygen.Install("eo@1.0")]))
    pygen.process_request(session, _request(tmp_path, [pygen.Upgrade(""), pygen.DoNotUpgrade("^en$")]))
    assert _specs(profile) == ["en@1.0", "eo@1.1"]
    session.close()


def test_upgrade_with_nothing_to_do(tmp_path):
    a = _package("ep", "1.0")
    session = _session(tmp_path, a)
    pygen.process_request(session, _request(tmp_path, [pygen.Install("ep")]))
    result = pygen.process_request(session, _request(tmp_path, [pygen.Upgrade("")]))
    assert result.outcome == pygen.NOTHING_TO_DO
    session.close()


def test_install_superseded_package(tmp_path):
    old, new = _package("eq", "1.0", superseded_by="er"), _package("er", "2.0")
    session = _session(tmp_path, old, new)
    profile = pygen.Profile(str(tmp_path / "profiles" / "work"))
    pygen.process_request(session, _request(tmp_path, [pygen.Install("eq")]))
    assert _specs(profile) == ["er@2.0"]
    session.close()


def test_install_errors(tmp_path):
    a = _package("es", "1.0")
    session = _session(tmp_path, a)
    with pytest.raises(pygen.PackageNotFound):
        pygen.process_request(session, _request(tmp_path, [pygen.Install("unknown")]))
    with pytest.raises(pygen.PackageNotFound, match="lacks output"):
        pygen.process_request(session, _request(tmp_path, [pygen.Install("es:doc")]))
    with pytest.raises(pygen.NonInstallableTarget):
        pygen.process_request(session, _request(tmp_path, [pygen.Install(str(tmp_path))]))
    session.close()


def test_install_store_item(tmp_path):
    a = _package("et", "1.0")
    session = _session(tmp_path, a)
    session.db.add_store_item(a.item(), "et", "1.0", "out")
    profile = pygen.Profile(str(tmp_path / "profiles" / "work"))
    pygen.process_request(session, _request(tmp_path, [pygen.Install(a.item())]))
    assert _specs(profile) == ["et@1.0"]
    session.close()


def test_manifest_file_replaces_contents(tmp_path):
    a, b, c = _package("eu", "1.0"), _package("ev", "1.0"), _package("ew", "1.0")
    session = _session(tmp_path, a, b, c)
    profile = pygen.Profile(str(tmp_path / "profiles" / "work"))
    pygen.process_request(session, _request(tmp_path, [pygen.Install("eu")]))
    manifest_file = tmp_path / "manifest.yaml"
    manifest_file.write_text(yaml.dump({"packages": ["ev", "ew"]}))
    pygen.process_request(session, _request(tmp_path, [pygen.ManifestFile(str(manifest_file))]))
    assert _specs(profile) == ["ev@1.0", "ew@1.0"]
    session.close()


def test_exported_manifest_reproduces_profile(tmp_path):
    a, b = _package("ex", "1.0", outputs=["out", "doc"]), _package("ey", "3.1")
    session = _session(tmp_path, a, b)
    profile = pygen.Profile(str(tmp_path / "profiles" / "work"))
    pygen.process_request(
        session, _request(tmp_path, [pygen.Install("ex"), pygen.Install("ex:doc"), pygen.Install("ey")])
    )
    exported = pygen.export_manifest(profile)
    assert yaml.safe_load(exported) == {"packages": ["ex@1.0", "ex@1.0:doc", "ey@3.1"]}
    manifest_file = tmp_path / "exported.yaml"
    manifest_file.write_text(exported)
    result = pygen.process_request(session, _request(tmp_path, [pygen.ManifestFile(str(manifest_file))]))
    assert result.outcome == pygen.NOTHING_TO_DO
    session.close()


def test_invalid_manifest_file(tmp_path):
    session = _session(tmp_path)
    manifest_file = tmp_path / "bad.yaml"
    manifest_file.write_text(yaml.dump(["not", "a", "mapping"]))
    with pytest.raises(pygen.PygenError, match="expected a mapping"):
        pygen.process_request(session, _request(tmp_path, [pygen.ManifestFile(str(manifest_file))]))
    session.close()


def test_admin_then_transaction_in_one_request(tmp_path):
    a, b = _package("ez", "1.0"), _package("fa", "1.0")
    session = _session(tmp_path, a, b)
    profile = pygen.Profile(str(tmp_path / "profiles" / "work"))
    pygen.process_request(session, _request(tmp_path, [pygen.Install("ez")]))
    pygen.process_request(session, _request(tmp_path, [pygen.Install("fa")]))
    pygen.process_request(session, _request(tmp_path, [pygen.RollBack(), pygen.Install("fa")]))
    # rolled back to 1, then a new generation 2 replaced the stale one
    assert profile.current_number() == 2
    assert profile.generation_numbers() == [1, 2]
    assert _specs(profile) == ["ez@1.0", "fa@1.0"]
    session.close()


def test_list_queries(tmp_path):
    a, b = _package("fb", "1.0"), _package("fc", "2.0")
    session = _session(tmp_path, a, b)
    profile = pygen.Profile(str(tmp_path / "profiles" / "work"))
    pygen.process_request(session, _request(tmp_path, [pygen.Install("fb")]))
    pygen.process_request(session, _request(tmp_path, [pygen.Install("fc")]))
    assert [e.name for e in pygen.list_installed(profile, "^fc")] == ["fc"]
    generations = pygen.list_generations(profile)
    assert [n for n, _, _ in generations] == [1, 2]
    assert [e.name for e in generations[0][2]] == ["fb"]
    with pytest.raises(pygen.NoMatchingGeneration):
        pygen.list_generations(profile, "7")
    assert [p.name for p in pygen.list_available(session.index, "^f[bc]$")] == ["fb", "fc"]
    session.close()


def test_unknown_action_is_rejected(tmp_path):
    session = _session(tmp_path)
    with pytest.raises(TypeError):
        pygen.run_admin_action(session, pygen.Profile(str(tmp_path / "p")), pygen.Install("x"))
    session.close()


def test_explicit_install_wins_over_upgrade(tmp_path):
    old, new = _package("fd", "1.0"), _package("fd", "1.2")
    session = _session(tmp_path, old, new)
    profile = pygen.Profile(str(tmp_path / "profiles" / "work"))
    pygen.process_request(session, _request(tmp_path, [pygen.Install("fd@1.0")]))
    result = pygen.process_request(
        session, _request(tmp_path, [pygen.Upgrade(""), pygen.Install("fd@1.0")])
    )
    assert _specs(profile) == ["fd@1.0"]
    assert result.outcome == pygen.NOTHING_TO_DO
    assert profile.generation_numbers() == [1]
    session.close()


def test_install_package_with_dated_property(tmp_path):
    recipes = tmp_path / "recipes"
    recipes.mkdir()
    (recipes / "fe.yaml").write_text('name: fe\nversion: "1.0"\nproperties:\n  released: 2020-01-01\n')
    package = pygen.find_packages_in_dir(str(recipes))[0]
    session = _session(tmp_path, package)
    profile = pygen.Profile(str(tmp_path / "profiles" / "work"))
    result = pygen.process_request(session, _request(tmp_path, [pygen.Install("fe")]))
    assert result.outcome == pygen.PUBLISHED
    assert profile.manifest().lookup("fe").properties == {"released": "2020-01-01"}
    session.close()


def test_unreadable_manifest_files(tmp_path):
    session = _session(tmp_path)
    with pytest.raises(pygen.PygenError, match="could not read manifest file"):
        pygen.process_request(
            session, _request(tmp_path, [pygen.ManifestFile(str(tmp_path / "missing.yaml"))])
        )
    broken = tmp_path / "broken.yaml"
    broken.write_text("packages: [ff\n")
    with pytest.raises(pygen.PygenError, match="could not read manifest file"):
        pygen.process_request(session, _request(tmp_path, [pygen.ManifestFile(str(broken))]))
    session.close()
