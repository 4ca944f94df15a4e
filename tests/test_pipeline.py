from pathlib import Path

import pytest

from conftest import DEFCONFIG_TEXT, FakeCheckout, FakeFetch
from features import (
    FEATURE_CATALOG,
    AppendLine,
    FeatureUnit,
    PatchSource,
    Toggle,
)
from pipeline import FeaturePipeline, UnitStatus

ALL_FEATURES = ("ksu", "ln8000", "f2fs", "nethunter-full", "kprofiles")


def selection_of(**toggles):
    selection = {name: Toggle.UNSPECIFIED for name in ALL_FEATURES}
    for name, toggle in toggles.items():
        selection[name.replace("_", "-")] = toggle
    return selection


def defconfig_lines(root: Path) -> list[str]:
    checkout = FakeCheckout(root)
    return checkout.defconfig_path.read_text(encoding="utf-8").splitlines()


def appended_lines(*names: str) -> list[str]:
    lines = []
    for unit in FEATURE_CATALOG:
        if unit.name in names:
            lines += [
                edit.line for edit in unit.config_edits
                if isinstance(edit, AppendLine) and edit.target is None
            ]
    return lines


def baseline_defconfig() -> list[str]:
    lines = DEFCONFIG_TEXT.splitlines()
    lines[lines.index("# CONFIG_PID_NS is not set")] = "CONFIG_PID_NS=y"
    return lines + appended_lines("baseline")


def test_all_disabled_applies_only_unconditional_units(kernel_tree, fake_fetch):
    checkout = FakeCheckout(kernel_tree)
    selection = {name: Toggle.DISABLED for name in ALL_FEATURES}

    run = FeaturePipeline(checkout, fetch=fake_fetch).run(selection)

    assert run.succeeded
    assert [r.name for r in run.results if r.status is UnitStatus.APPLIED] == ["baseline", "dtbo"]
    assert all(
        run.result(name).status is UnitStatus.SKIPPED for name in ALL_FEATURES
    )
    assert defconfig_lines(kernel_tree) == baseline_defconfig()
    makefile = (kernel_tree / "Makefile").read_text(encoding="utf-8")
    assert "KBUILD_CFLAGS   += -O3" in makefile
    assert "LDFLAGS += -O3" in makefile


def test_unspecified_features_are_skipped(kernel_tree, fake_fetch):
    checkout = FakeCheckout(kernel_tree)

    run = FeaturePipeline(checkout, fetch=fake_fetch).run({})

    assert run.succeeded
    assert run.result("ksu").status is UnitStatus.SKIPPED
    assert "ksu.patch" not in fake_fetch.calls


def test_mixed_selection_adds_lines_in_pipeline_order(kernel_tree, fake_fetch):
    checkout = FakeCheckout(kernel_tree)
    selection = selection_of(
        ksu=Toggle.ENABLED,
        ln8000=Toggle.DISABLED,
        f2fs=Toggle.ENABLED,
        nethunter_full=Toggle.DISABLED,
        kprofiles=Toggle.ENABLED,
    )

    run = FeaturePipeline(checkout, fetch=fake_fetch).run(selection)

    assert run.succeeded
    expected = baseline_defconfig() + appended_lines("f2fs", "ksu", "kprofiles")
    lines = defconfig_lines(kernel_tree)
    assert lines == expected
    assert "CONFIG_CHARGER_LN8000=y" not in lines
    assert not any(line.startswith("CONFIG_USB_") for line in lines)
    assert not any(call.startswith("ln8k") for call in fake_fetch.calls)


def test_ksu_unit_clones_links_and_patches_inside_clone(kernel_tree, fake_fetch):
    checkout = FakeCheckout(kernel_tree)

    run = FeaturePipeline(checkout, fetch=fake_fetch).run(selection_of(ksu=Toggle.ENABLED))

    assert run.result("ksu").status is UnitStatus.APPLIED
    link = kernel_tree / "drivers" / "kernelsu"
    assert link.is_symlink()
    assert link.resolve() == (kernel_tree / "KernelSU" / "kernel").resolve()
    assert (kernel_tree / "KernelSU" / "ksun_susfs.patch").is_file()
    # Clone before any patch of the unit
    assert fake_fetch.calls.index("KernelSU") < fake_fetch.calls.index("ksu.patch")


def test_rerun_does_not_duplicate_lines(kernel_tree, fake_fetch):
    checkout = FakeCheckout(kernel_tree)
    selection = {name: Toggle.ENABLED for name in ALL_FEATURES}
    pipeline = FeaturePipeline(checkout, fetch=fake_fetch)

    assert pipeline.run(selection).succeeded
    first = {
        path: path.read_text(encoding="utf-8")
        for path in [
            checkout.defconfig_path,
            kernel_tree / "Makefile",
            kernel_tree / "drivers" / "misc" / "Kconfig",
            kernel_tree / "drivers" / "misc" / "Makefile",
        ]
    }

    assert pipeline.run(selection).succeeded

    for path, text in first.items():
        assert path.read_text(encoding="utf-8") == text
        lines = [line for line in text.splitlines() if line.strip()]
        assert len(lines) == len(set(lines)), path


def test_existing_clone_target_is_not_cloned_again(kernel_tree, fake_fetch):
    (kernel_tree / "drivers" / "misc" / "kprofiles").mkdir()
    checkout = FakeCheckout(kernel_tree)

    run = FeaturePipeline(checkout, fetch=fake_fetch).run(selection_of(kprofiles=Toggle.ENABLED))

    assert run.result("kprofiles").status is UnitStatus.APPLIED
    assert not any("kprofiles" in call for call in fake_fetch.calls)


def test_mandatory_fetch_failure_stops_later_units(kernel_tree):
    fetch = FakeFetch(failing={"f2fscompression.patch"})
    checkout = FakeCheckout(kernel_tree)
    selection = {name: Toggle.ENABLED for name in ALL_FEATURES}

    run = FeaturePipeline(checkout, fetch=fetch).run(selection)

    assert not run.succeeded
    assert "f2fs" in run.error
    assert "apply f2fscompression.patch" in run.error
    result = run.result("f2fs")
    assert result.status is UnitStatus.FAILED
    assert result.failed_step == "apply f2fscompression.patch"

    for name in ("ln8000", "ksu", "kprofiles", "nethunter-full"):
        assert run.result(name) is None
    assert fetch.calls[-1] == "f2fscompression.patch"
    lines = defconfig_lines(kernel_tree)
    assert "CONFIG_F2FS_FS_COMPRESSION=y" not in lines
    assert "CONFIG_KSU=y" not in lines


def test_mandatory_incompatible_patch_aborts(kernel_tree, fake_fetch):
    checkout = FakeCheckout(kernel_tree, incompatible={"dtbo3.patch"})

    run = FeaturePipeline(checkout, fetch=fake_fetch).run(selection_of(f2fs=Toggle.ENABLED))

    assert not run.succeeded
    assert run.result("dtbo").failed_step == "apply dtbo3.patch"
    assert checkout.applied[-1] == "dtbo2.patch"
    assert run.result("f2fs") is None


def test_best_effort_incompatible_patch_is_skipped(kernel_tree, fake_fetch):
    checkout = FakeCheckout(kernel_tree, incompatible={"susfs.patch"})
    selection = selection_of(ksu=Toggle.ENABLED, kprofiles=Toggle.ENABLED)

    run = FeaturePipeline(checkout, fetch=fake_fetch).run(selection)

    assert run.succeeded
    ksu = run.result("ksu")
    assert ksu.status is UnitStatus.SKIPPED_WITH_WARNING
    assert len(ksu.warnings) == 1
    assert "susfs.patch" not in checkout.applied
    assert "ksun_susfs.patch" in checkout.applied
    assert "CONFIG_KSU=y" in defconfig_lines(kernel_tree)
    assert run.result("kprofiles").status is UnitStatus.APPLIED


def test_best_effort_fetch_failure_is_skipped(kernel_tree):
    fetch = FakeFetch(failing={"kpatch_fix.patch"})
    checkout = FakeCheckout(kernel_tree)

    run = FeaturePipeline(checkout, fetch=fetch).run(selection_of(ksu=Toggle.ENABLED))

    assert run.succeeded
    assert run.result("ksu").status is UnitStatus.SKIPPED_WITH_WARNING
    assert "kpatch_fix.patch" not in checkout.applied
    assert "susfs.patch" in checkout.applied


def test_failed_clone_leaves_no_directory_and_next_run_clones(kernel_tree):
    checkout = FakeCheckout(kernel_tree)
    selection = selection_of(ksu=Toggle.ENABLED)

    run = FeaturePipeline(checkout, fetch=FakeFetch(failing={"KernelSU"})).run(selection)

    assert run.succeeded
    ksu = run.result("ksu")
    assert ksu.status is UnitStatus.SKIPPED_WITH_WARNING
    assert any("ksun_susfs.patch" in warning for warning in ksu.warnings)
    assert not (kernel_tree / "KernelSU").exists()
    assert "ksun_susfs.patch" not in checkout.applied

    fetch = FakeFetch()
    run = FeaturePipeline(checkout, fetch=fetch).run(selection)

    assert run.result("ksu").status is UnitStatus.APPLIED
    assert "KernelSU" in fetch.calls
    assert (kernel_tree / "drivers" / "kernelsu").resolve() == (
        kernel_tree / "KernelSU" / "kernel"
    ).resolve()
    assert (kernel_tree / "KernelSU" / "ksun_susfs.patch").is_file()


def test_missing_local_patch_is_a_fetch_failure(kernel_tree, fake_fetch):
    (kernel_tree / "ksumakefile.patch").unlink()
    checkout = FakeCheckout(kernel_tree)

    run = FeaturePipeline(checkout, fetch=fake_fetch).run(selection_of(ksu=Toggle.ENABLED))

    assert run.succeeded
    assert "ksumakefile.patch" in run.result("ksu").warnings[0]


def test_missing_config_file_aborts_mandatory_unit(kernel_tree, fake_fetch):
    (kernel_tree / "drivers" / "misc" / "Makefile").unlink()
    checkout = FakeCheckout(kernel_tree)

    run = FeaturePipeline(checkout, fetch=fake_fetch).run(selection_of(kprofiles=Toggle.ENABLED))

    assert not run.succeeded
    assert run.result("kprofiles").failed_step.startswith("append 'obj-$(CONFIG_KPROFILES)")


def test_duplicate_unit_names_are_rejected(kernel_tree):
    unit = FeatureUnit(name="f2fs", description="one", flag="f2fs")

    with pytest.raises(ValueError, match="Duplicate feature unit names: f2fs"):
        FeaturePipeline(FakeCheckout(kernel_tree), units=(unit, unit))


def test_unknown_feature_in_selection_is_rejected(kernel_tree, fake_fetch):
    pipeline = FeaturePipeline(FakeCheckout(kernel_tree), fetch=fake_fetch)

    with pytest.raises(ValueError, match="Unknown features in selection: wifi"):
        pipeline.run({"wifi": Toggle.ENABLED})


def test_custom_units_run_in_declared_order(kernel_tree, fake_fetch):
    first = FeatureUnit(
        name="first",
        description="first",
        flag="first",
        patches=(PatchSource("one.patch", "https://example.invalid/one.patch"),),
        config_edits=(AppendLine("CONFIG_FIRST=y"),),
    )
    second = FeatureUnit(
        name="second",
        description="second",
        config_edits=(AppendLine("CONFIG_SECOND=y"),),
    )
    checkout = FakeCheckout(kernel_tree)

    run = FeaturePipeline(checkout, units=(first, second), fetch=fake_fetch).run(
        {"first": Toggle.ENABLED}
    )

    assert run.succeeded
    assert defconfig_lines(kernel_tree)[-2:] == ["CONFIG_FIRST=y", "CONFIG_SECOND=y"]
    assert checkout.applied == ["one.patch"]
