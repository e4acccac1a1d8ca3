from viking_rag.code_parser import CodeStructure, detect_language, parse_code_structure


def test_typescript_declarations():
    source = """
import { readFile } from 'fs/promises';
import * as path from "path";
import React from 'react';

export class KvStore {}
abstract class Base {}
export async function loadAll() {}
export const build = async (x) => x;
const helper = function () {};
export interface Options {}
export default function main() {}
"""

    structure = parse_code_structure(source, "src/rag/storage.ts")

    assert structure.classes == ["KvStore", "Base"]
    assert structure.functions[:4] == ["loadAll", "main", "build", "helper"]
    assert structure.imports == ["fs/promises", "path", "react"]
    assert structure.exports == ["KvStore", "build", "Options", "main"]
    assert structure.kind == "class"


def test_python_top_level_names_and_all():
    source = """import os
import json
from pathlib import Path
from .local import thing

__all__ = ["open_store", 'Store']


class Store:
    def method(self):
        pass


async def open_store():
    pass


def open_store():
    pass
"""

    structure = parse_code_structure(source, "pkg/store.py")

    assert structure.functions == ["open_store"]
    assert structure.classes == ["Store"]
    assert structure.imports == ["os", "json", "pathlib", ".local"]
    assert structure.exports == ["open_store", "Store"]


def test_go_and_rust():
    go = parse_code_structure(
        'package main\n\nimport "fmt"\n\ntype Server struct {}\n\nfunc (s *Server) Run() {}\nfunc main() {}\n',
        "cmd/main.go",
    )
    rust = parse_code_structure(
        "use std::collections::HashMap;\npub struct Cache {}\nimpl Cache {\n    pub fn get<K>(&self) {}\n}\nasync fn serve() {}\n",
        "src/lib.rs",
    )

    assert go.functions == ["Run", "main"]
    assert go.classes == ["Server"]
    assert go.imports == ["fmt"]
    assert rust.functions == ["get", "serve"]
    assert rust.classes == ["Cache"]
    assert rust.imports == ["std::collections::HashMap"]


def test_java_skips_control_keywords():
    source = """import java.util.List;

public class Service {
    public List<String> names() {
        if (ready) { return List.of(); }
        while (x) {}
        return null;
    }
}
"""

    structure = parse_code_structure(source, "Service.java")

    assert "names" in structure.functions
    assert not {"if", "while", "for", "return"} & set(structure.functions)
    assert structure.classes == ["Service"]
    assert structure.imports == ["java.util.List"]


def test_kind_inference():
    assert parse_code_structure('{"a": 1}', "package.json").kind == "config"
    assert parse_code_structure("a: 1\n", "ci.yml").kind == "config"
    assert parse_code_structure("deploy() {\n  echo hi\n}\n", "deploy.sh").kind == "script"
    assert parse_code_structure("import os\n", "x.py").kind == "module"
    assert parse_code_structure("just words", "README.md").kind == "unknown"
    assert parse_code_structure("whatever", "blob.bin").kind == "unknown"


def test_detect_language_by_extension():
    assert detect_language("a/b/c.TSX") == "typescript"
    assert detect_language("win\\path\\tool.py") == "python"
    assert detect_language("Makefile") == "text"


def test_structure_dict_accepts_legacy_type_key():
    structure = CodeStructure.from_dict({"functions": ["f"], "type": "module"})

    assert structure.kind == "module"
    assert CodeStructure.from_dict(structure.to_dict()) == structure
    assert CodeStructure.from_dict({"kind": "weird"}).kind == "unknown"
